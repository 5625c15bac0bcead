"""Token ledger models: per-user balance and append-only transactions."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

TRANSACTION_TYPES: tuple[str, ...] = ("purchase", "usage", "refund", "bonus", "reset")


class UserProfile(TimestampMixin, Base):
    """Current token balance for a user (keyed by the auth user id)."""

    __tablename__ = "user_profiles"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    current_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, current_tokens={self.current_tokens})>"


class TokenTransaction(UUIDPrimaryKeyMixin, Base):
    """A single credit or debit against a user's token balance."""

    __tablename__ = "token_transactions"
    __table_args__ = (
        Index("ix_token_transactions_subscription_type", "subscription_id", "transaction_type"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("user_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return (
            f"<TokenTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.transaction_type!r})>"
        )
