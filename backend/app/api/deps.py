"""Shared API dependencies and error translation for the routers.

Router modules import everything they need from one place::

    from app.api.deps import get_db, billing_errors
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import stripe
from fastapi import HTTPException, status

from app.billing.exceptions import BillingError
from app.database import get_db

logger = logging.getLogger(__name__)

__all__ = ["get_db", "billing_errors"]


@contextmanager
def billing_errors(action: str) -> Iterator[None]:
    """Translate billing and Stripe failures raised inside the block into HTTP errors.

    ``action`` is the error text returned for Stripe and unexpected failures,
    e.g. ``"Failed to cancel subscription"``.
    """
    try:
        yield
    except HTTPException:
        raise
    except BillingError as e:
        logger.warning("%s: %s", action, e.message)
        raise HTTPException(status_code=e.status_code, detail=e.to_detail()) from e
    except stripe.StripeError as e:
        logger.error("%s: Stripe error %s (%s)", action, e.user_message or str(e), e.code)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": action,
                "message": e.user_message or str(e),
                "code": e.code,
                "type": type(e).__name__,
            },
        ) from e
    except Exception as e:
        logger.exception("%s: unexpected error", action)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": action, "message": str(e)},
        ) from e
