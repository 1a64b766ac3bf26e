"""
Credit Ledger - two-tier balance with write verification.

Every mutation follows the pattern:
1. Acquire the in-process per-user lock
2. Lock the balance row (SELECT FOR UPDATE)
3. Apply the change and write an audit transaction
4. Flush, read back and verify
5. Commit
"""

import asyncio
import weakref
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_broker.db.models import CreditBalance, CreditTransaction
from credit_broker.exceptions import (
    BalanceNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
    WriteVerificationError,
)
from credit_broker.models.api import CreditTier, TransactionType
from credit_broker.models.domain import (
    BalanceSnapshot,
    PackageLimits,
    RefillResult,
    ReservationResult,
)
from credit_broker.observability.metrics import metrics
from credit_broker.observability.tracing import trace_operation

logger = get_logger(__name__)

UNLIMITED = -1
NO_PACKAGE_REASON = "No active subscription found"
GENERATION_LIMIT_REASON = "Monthly generation limit exceeded"


class UserLockRegistry:
    """
    One asyncio.Lock per user id.

    Serializes ledger mutations for a user inside this process. Locks are held
    weakly, so a user's entry disappears once no coroutine references it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, user_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


# Shared by every ledger in this process
user_locks = UserLockRegistry()


class CreditLedger:
    """
    Reserve and refill credits across the package and account tiers.

    Reservations draw from the package allowance first and fall back to the
    account balance. Refills always credit the account balance.
    """

    def __init__(self, session: AsyncSession, locks: UserLockRegistry | None = None) -> None:
        """Initialize ledger with database session and lock registry."""
        self.session = session
        self.locks = locks or user_locks

    async def reserve(
        self,
        user_id: UUID,
        amount: int,
        description: str,
        generation_id: UUID | None = None,
        audit_metadata: dict[str, Any] | None = None,
        generations: int = 1,
    ) -> ReservationResult:
        """
        Atomically debit `amount` credits from a single tier.

        Package usage counters are advanced by `amount` credits and
        `generations` generations whichever tier pays.

        Raises:
            BalanceNotFoundError: User has no balance row
            InsufficientCreditsError: Neither tier alone can cover the amount
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive: {amount}")

        async with self.locks.lock_for(user_id):
            with trace_operation("credit_reservation", user_id=str(user_id), amount=amount) as span:
                try:
                    result = await self._reserve_locked(
                        user_id, amount, description, generation_id, audit_metadata, generations
                    )
                except InsufficientCreditsError as exc:
                    await self.session.rollback()
                    metrics.record_reservation(success=False, amount=amount)
                    logger.warning(
                        "credit_reservation_insufficient",
                        user_id=str(user_id),
                        required=exc.required,
                        available=exc.available,
                    )
                    raise
                except Exception:
                    await self.session.rollback()
                    metrics.record_reservation(success=False, amount=amount)
                    raise

                span.set_attribute("tier", result.tier.value)

        metrics.record_reservation(success=True, amount=amount, tier=result.tier.value)
        logger.info(
            "credits_reserved",
            user_id=str(user_id),
            amount=amount,
            tier=result.tier.value,
            remaining_balance=result.remaining_balance,
            generation_id=str(generation_id) if generation_id else None,
        )
        return result

    async def refill(
        self,
        user_id: UUID,
        amount: int,
        reason: str,
        transaction_type: TransactionType = TransactionType.REFUND,
        generation_id: UUID | None = None,
        audit_metadata: dict[str, Any] | None = None,
    ) -> RefillResult:
        """
        Credit the account tier.

        Raises:
            BalanceNotFoundError: User has no balance row
        """
        if amount <= 0:
            raise ValueError(f"Refill amount must be positive: {amount}")

        async with self.locks.lock_for(user_id):
            with trace_operation("credit_refill", user_id=str(user_id), amount=amount):
                try:
                    balance = await self._lock_balance_for_update(user_id)
                    if balance is None:
                        raise BalanceNotFoundError(user_id)

                    total_before = balance.total_available
                    account_after = balance.account_balance + amount

                    transaction = CreditTransaction(
                        id=uuid4(),
                        user_id=user_id,
                        transaction_type=transaction_type.value,
                        credit_tier=CreditTier.ACCOUNT.value,
                        amount=amount,
                        balance_before=total_before,
                        balance_after=total_before + amount,
                        description=reason,
                        generation_id=generation_id,
                        audit_metadata=audit_metadata or {},
                    )
                    self.session.add(transaction)
                    await self.session.flush()
                    await self._verify_transaction(transaction)

                    balance.account_balance = account_after
                    await self.session.flush()
                    await self._verify_balance(balance, account_balance=account_after)

                    await self.session.commit()
                except Exception:
                    await self.session.rollback()
                    raise

        logger.info(
            "credits_refilled",
            user_id=str(user_id),
            amount=amount,
            transaction_type=transaction_type.value,
            new_balance=account_after,
            generation_id=str(generation_id) if generation_id else None,
        )
        return RefillResult(
            user_id=user_id,
            amount=amount,
            new_balance=account_after,
            transaction_id=transaction.id,
        )

    async def release_package_usage(
        self, user_id: UUID, credits: int, generations: int = 1
    ) -> None:
        """
        Roll back package usage counters after a refund.

        Counters are clamped at zero. A missing balance row is logged and ignored.
        """
        async with self.locks.lock_for(user_id):
            try:
                balance = await self._lock_balance_for_update(user_id)
                if balance is None:
                    logger.warning("package_usage_release_no_balance", user_id=str(user_id))
                    await self.session.rollback()
                    return

                balance.credits_used_this_period = max(
                    0, balance.credits_used_this_period - credits
                )
                balance.generations_this_period = max(
                    0, balance.generations_this_period - generations
                )
                await self.session.flush()
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        logger.info(
            "package_usage_released",
            user_id=str(user_id),
            credits=credits,
            generations=generations,
        )

    async def check_sufficient(self, user_id: UUID, amount: int) -> bool:
        """Check total available credits without reserving. Missing users have none."""
        balance = await self._find_balance(user_id)
        if balance is None:
            return False
        return balance.total_available >= amount

    async def check_package_limits(self, user_id: UUID) -> PackageLimits:
        """Cheap gate evaluated before pricing."""
        balance = await self._find_balance(user_id)
        if balance is None or not balance.has_active_package:
            return PackageLimits(
                can_generate=False,
                credits_remaining=0,
                generations_remaining=0,
                reason=NO_PACKAGE_REASON,
            )

        credits_remaining = max(
            0, balance.package_allowance_total - balance.credits_used_this_period
        )
        if not balance.max_generations_per_period:
            generations_remaining = UNLIMITED
        else:
            generations_remaining = max(
                0, balance.max_generations_per_period - balance.generations_this_period
            )

        if generations_remaining == 0:
            return PackageLimits(
                can_generate=False,
                credits_remaining=credits_remaining,
                generations_remaining=0,
                reason=GENERATION_LIMIT_REASON,
            )

        return PackageLimits(
            can_generate=True,
            credits_remaining=credits_remaining,
            generations_remaining=generations_remaining,
        )

    async def get_balance(self, user_id: UUID) -> BalanceSnapshot:
        """
        Get the user's balance.

        Raises:
            BalanceNotFoundError: User has no balance row
        """
        balance = await self._find_balance(user_id)
        if balance is None:
            raise BalanceNotFoundError(user_id)
        return self._balance_to_domain(balance)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _reserve_locked(
        self,
        user_id: UUID,
        amount: int,
        description: str,
        generation_id: UUID | None,
        audit_metadata: dict[str, Any] | None,
        generations: int,
    ) -> ReservationResult:
        balance = await self._lock_balance_for_update(user_id)
        if balance is None:
            raise BalanceNotFoundError(user_id)

        total_before = balance.total_available
        package_used_after = balance.package_allowance_used_this_period
        account_after = balance.account_balance

        # Never split a reservation across tiers
        if balance.available_package >= amount:
            tier = CreditTier.PACKAGE
            package_used_after += amount
        elif balance.account_balance >= amount:
            tier = CreditTier.ACCOUNT
            account_after -= amount
        else:
            raise InsufficientCreditsError(required=amount, available=total_before)

        transaction = CreditTransaction(
            id=uuid4(),
            user_id=user_id,
            transaction_type=TransactionType.RESERVATION.value,
            credit_tier=tier.value,
            amount=amount,
            balance_before=total_before,
            balance_after=total_before - amount,
            description=description,
            generation_id=generation_id,
            audit_metadata=audit_metadata or {},
        )
        self.session.add(transaction)
        await self.session.flush()
        await self._verify_transaction(transaction)

        balance.package_allowance_used_this_period = package_used_after
        balance.account_balance = account_after
        balance.credits_used_this_period += amount
        balance.generations_this_period += generations
        await self.session.flush()
        await self._verify_balance(
            balance,
            account_balance=account_after,
            package_allowance_used_this_period=package_used_after,
        )

        await self.session.commit()

        return ReservationResult(
            user_id=user_id,
            amount=amount,
            tier=tier,
            remaining_balance=total_before - amount,
            transaction_id=transaction.id,
        )

    async def _verify_transaction(self, transaction: CreditTransaction) -> None:
        verified = await self.session.get(CreditTransaction, transaction.id)
        if verified is None:
            raise WriteVerificationError(f"Transaction {transaction.id} not found after insert")

    async def _verify_balance(self, balance: CreditBalance, **expected: int) -> None:
        verified = await self.session.get(CreditBalance, balance.id)
        if verified is None:
            raise WriteVerificationError(f"Balance {balance.id} disappeared after update")

        for column, value in expected.items():
            actual = getattr(verified, column)
            if actual != value:
                raise DataIntegrityError(
                    f"{column} mismatch: expected {value}, got {actual}"
                )

    async def _find_balance(self, user_id: UUID) -> CreditBalance | None:
        stmt = select(CreditBalance).where(CreditBalance.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_balance_for_update(self, user_id: UUID) -> CreditBalance | None:
        """Lock balance row for update (SELECT FOR UPDATE)."""
        stmt = select(CreditBalance).where(CreditBalance.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _balance_to_domain(self, balance: CreditBalance) -> BalanceSnapshot:
        return BalanceSnapshot(
            user_id=balance.user_id,
            package_allowance_total=balance.package_allowance_total,
            package_allowance_used_this_period=balance.package_allowance_used_this_period,
            account_balance=balance.account_balance,
            credits_used_this_period=balance.credits_used_this_period,
            generations_this_period=balance.generations_this_period,
            max_generations_per_period=balance.max_generations_per_period,
            has_active_package=balance.has_active_package,
        )
