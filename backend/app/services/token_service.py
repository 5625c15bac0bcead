"""Token ledger service: balances and append-only token transactions."""

import logging
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.token import TRANSACTION_TYPES, TokenTransaction, UserProfile

logger = logging.getLogger(__name__)

PURCHASE = "purchase"


async def get_or_create_profile(db: AsyncSession, user_id: uuid.UUID) -> UserProfile:
    """Get the user's token profile, creating an empty one if missing."""
    profile = await db.get(UserProfile, user_id, populate_existing=True)
    if profile is not None:
        return profile

    logger.info("Creating token profile for user %s", user_id)
    profile = UserProfile(id=user_id, current_tokens=0, total_tokens_used=0)
    db.add(profile)
    await db.flush()
    return profile


async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Current token balance (0 for users without a profile)."""
    profile = await db.get(UserProfile, user_id, populate_existing=True)
    return profile.current_tokens if profile is not None else 0


async def has_purchase_for_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    """Whether a ``purchase`` transaction already references this subscription row."""
    result = await db.execute(
        select(func.count())
        .select_from(TokenTransaction)
        .where(
            TokenTransaction.subscription_id == subscription_id,
            TokenTransaction.transaction_type == PURCHASE,
        )
    )
    return result.scalar_one() > 0


async def credit_tokens(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    transaction_type: str = PURCHASE,
    description: str | None = None,
    subscription_id: uuid.UUID | None = None,
) -> int:
    """Add tokens to a user's balance and record the transaction.

    Returns the new balance.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {transaction_type}")
    if amount <= 0:
        raise ValueError("Credited amount must be positive")

    await get_or_create_profile(db, user_id)
    # Increment in SQL so concurrent credits never overwrite each other
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id)
        .values(current_tokens=UserProfile.current_tokens + amount)
        .returning(UserProfile.current_tokens)
        .execution_options(synchronize_session=False)
    )
    balance = result.scalar_one()

    db.add(
        TokenTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            subscription_id=subscription_id,
            balance_after=balance,
        )
    )
    await db.flush()

    logger.info(
        "Credited %d tokens to user %s (%s), new balance %d",
        amount,
        user_id,
        transaction_type,
        balance,
    )
    return balance
