"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditBalance(Base):
    """
    ORM model for credit_balances table.

    One row per user. This row is the lock target for every reservation.
    """

    __tablename__ = "credit_balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, unique=True)

    # Package tier (periodic allowance, reset externally at period rollover)
    has_active_package: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    package_allowance_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    package_allowance_used_this_period: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )

    # Package usage counters checked by the limits gate (not part of the balance)
    credits_used_this_period: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    generations_this_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_generations_per_period: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Account tier (top-ups and refunds)
    account_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("package_allowance_total >= 0", name="ck_package_total_non_negative"),
        CheckConstraint(
            "package_allowance_used_this_period >= 0", name="ck_package_used_non_negative"
        ),
        CheckConstraint("account_balance >= 0", name="ck_account_balance_non_negative"),
        CheckConstraint("generations_this_period >= 0", name="ck_generations_non_negative"),
        CheckConstraint("credits_used_this_period >= 0", name="ck_credits_used_non_negative"),
    )

    @property
    def available_package(self) -> int:
        return max(0, self.package_allowance_total - self.package_allowance_used_this_period)

    @property
    def total_available(self) -> int:
        return self.available_package + self.account_balance

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditBalance(user_id={self.user_id}, package={self.available_package}, "
            f"account={self.account_balance})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Immutable audit ledger of reservations, refunds and top-ups.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    credit_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Total available before/after (denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String, nullable=False)
    generation_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    audit_metadata: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        Index("idx_credit_transactions_created_at", "created_at"),
        Index(
            "idx_credit_transactions_generation_id",
            "generation_id",
            postgresql_where=(generation_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, type={self.transaction_type}, "
            f"amount={self.amount})>"
        )


class Generation(Base):
    """
    ORM model for generations table.

    Created in pending together with its reservation; mutated afterwards only by
    provider events. Never deleted here.
    """

    __tablename__ = "generations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Provider job id, set once the provider accepts the request
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    model_version: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    credits_reserved: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    input: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    output: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stored_urls: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    processing_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    audit_metadata: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_reserved >= 0", name="ck_credits_reserved_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'starting', 'processing', 'completed', 'failed')",
            name="ck_generation_status",
        ),
        Index("idx_generations_status", "status"),
        Index("idx_generations_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Generation(id={self.id}, external_id={self.external_id}, "
            f"status={self.status})>"
        )
