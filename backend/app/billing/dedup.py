"""Process-local de-duplication of subscription processing.

Stripe often delivers ``checkout.session.completed`` and
``customer.subscription.created`` for the same subscription within the same
second. This cache skips the second one when both land on the same process.
It is not durable and not shared between instances; correctness relies on the
unique constraint on ``user_subscriptions.stripe_subscription_id``. Keys added
while handling a webhook are tied to the request's session and released when
that session rolls back, so a retried delivery is processed again.
"""

import logging
from collections import OrderedDict

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings

logger = logging.getLogger(__name__)


class RecentKeyCache:
    """Bounded LRU set of recently seen keys."""

    def __init__(self, max_size: int = 100) -> None:
        self._max_size = max_size
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        """Record a key. Returns False if it was already present."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        while len(self._keys) > self._max_size:
            evicted, _ = self._keys.popitem(last=False)
            logger.debug("Evicted %s from recent key cache", evicted)
        return True

    def discard(self, key: str) -> None:
        self._keys.pop(key, None)

    def clear(self) -> None:
        self._keys.clear()


processed_subscriptions = RecentKeyCache(max_size=settings.webhook_dedup_cache_size)


def subscription_key(subscription_id: str, user_id: str, plan_type: str) -> str:
    return f"{subscription_id}-{user_id}-{plan_type}"


_SESSION_KEYS = "recent_subscription_keys"


def hold_until_commit(db: AsyncSession, key: str) -> None:
    """Remember that ``key`` was recorded inside ``db``'s open transaction."""
    db.info.setdefault(_SESSION_KEYS, set()).add(key)


def confirm_committed(db: AsyncSession) -> None:
    db.info.pop(_SESSION_KEYS, None)


def release_uncommitted(db: AsyncSession) -> None:
    """Forget keys whose rows were rolled back."""
    for key in db.info.pop(_SESSION_KEYS, set()):
        processed_subscriptions.discard(key)
        logger.info("Released %s from recent key cache after rollback", key)
