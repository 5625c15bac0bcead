"""SQLAlchemy models for PlugPress billing.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.plan import Plan
from app.models.subscription import UserSubscription
from app.models.token import TokenTransaction, UserProfile

__all__ = [
    "Plan",
    "TokenTransaction",
    "UserProfile",
    "UserSubscription",
]
