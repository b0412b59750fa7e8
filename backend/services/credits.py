"""Credit ledger — per-user balance debited before every metered AI call.

All balance changes are single conditional UPDATE statements so concurrent
requests from several devices can never drive a balance below zero or lose
an update.
"""

import logging
import os
from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.errors import InsufficientCreditsError
from backend.models_db import CreditAccount, CreditUsageLog

logger = logging.getLogger(__name__)


class CreditOperation(str, Enum):
    GREETING = "greeting"
    CONVERSATION = "conversation"
    PLAN_STRUCTURE = "plan_structure"
    PLAN_GENERATION = "plan_generation"
    PLAN_ACTIVITIES = "plan_activities"
    AGENT_PACKING = "agent_packing"
    AGENT_BUDGET = "agent_budget"
    REFUND = "refund"


DEFAULT_CREDIT_COSTS = {
    CreditOperation.GREETING: 1,
    CreditOperation.CONVERSATION: 1,
    CreditOperation.PLAN_STRUCTURE: 3,
    CreditOperation.PLAN_GENERATION: 3,
    CreditOperation.PLAN_ACTIVITIES: 1,
    CreditOperation.AGENT_PACKING: 1,
    CreditOperation.AGENT_BUDGET: 1,
}


def credit_cost(operation: CreditOperation) -> int:
    """Cost of an operation; CREDIT_COST_<OPERATION> overrides the default."""
    override = os.getenv(f"CREDIT_COST_{operation.value.upper()}")
    if override not in (None, ""):
        return int(override)
    return DEFAULT_CREDIT_COSTS[operation]


class CreditLedger:
    def __init__(
        self,
        session_factory=None,
        initial_credits: Optional[int] = None,
        monthly_quota: Optional[int] = None,
    ):
        if session_factory is None:
            from backend.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.initial_credits = initial_credits if initial_credits is not None else int(os.getenv("INITIAL_CREDITS", "20"))
        self.monthly_quota = monthly_quota if monthly_quota is not None else int(os.getenv("MONTHLY_CREDIT_QUOTA", "20"))

    def ensure_account(self, user_id: str) -> None:
        """Open an account with the starting balance if the user has none yet."""
        db = self._session_factory()
        try:
            if db.get(CreditAccount, user_id) is not None:
                return
            db.add(CreditAccount(
                user_id=user_id,
                balance=self.initial_credits,
                monthly_quota=self.monthly_quota,
            ))
            db.commit()
        except IntegrityError:
            # Another request opened it first
            db.rollback()
        finally:
            db.close()

    def get_balance(self, user_id: str) -> int:
        self.ensure_account(user_id)
        db = self._session_factory()
        try:
            return db.execute(
                select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
            ).scalar_one()
        finally:
            db.close()

    def charge(
        self,
        user_id: str,
        amount: int,
        operation: CreditOperation,
        trip_id: Optional[str] = None,
    ) -> int:
        """Debit ``amount`` if the balance covers it; return the new balance.

        Raises InsufficientCreditsError without touching the balance otherwise.
        """
        if amount < 0:
            raise ValueError("charge amount must be non-negative")
        if amount == 0:
            return self.get_balance(user_id)

        self.ensure_account(user_id)
        db = self._session_factory()
        try:
            result = db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
                .values(balance=CreditAccount.balance - amount)
            )
            db.commit()
            debited = result.rowcount == 1
        finally:
            db.close()

        balance = self.get_balance(user_id)
        if not debited:
            logger.info(f"Charge rejected: user={user_id} op={operation.value} amount={amount} balance={balance}")
            raise InsufficientCreditsError(required=amount, balance=balance)

        logger.info(f"Charged {amount} credit(s): user={user_id} op={operation.value} balance={balance}")
        self._log_usage(user_id, operation, amount, trip_id)
        return balance

    def refund(
        self,
        user_id: str,
        amount: int,
        operation: CreditOperation,
        trip_id: Optional[str] = None,
    ) -> int:
        """Give back a debit whose model call failed."""
        if amount <= 0:
            return self.get_balance(user_id)
        balance = self.grant(user_id, amount)
        logger.info(f"Refunded {amount} credit(s): user={user_id} op={operation.value} balance={balance}")
        self._log_usage(user_id, CreditOperation.REFUND, -amount, trip_id)
        return balance

    def grant(self, user_id: str, amount: int) -> int:
        """Top-up hook for the billing collaborator."""
        if amount < 0:
            raise ValueError("grant amount must be non-negative")
        self.ensure_account(user_id)
        db = self._session_factory()
        try:
            db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(balance=CreditAccount.balance + amount)
            )
            db.commit()
        finally:
            db.close()
        return self.get_balance(user_id)

    def refill_monthly(self, user_id: str) -> int:
        """Raise the balance to the monthly quota; never lowers it."""
        self.ensure_account(user_id)
        db = self._session_factory()
        try:
            db.execute(
                update(CreditAccount)
                .where(
                    CreditAccount.user_id == user_id,
                    CreditAccount.balance < CreditAccount.monthly_quota,
                )
                .values(balance=CreditAccount.monthly_quota)
            )
            db.commit()
        finally:
            db.close()
        return self.get_balance(user_id)

    def _log_usage(
        self,
        user_id: str,
        operation: CreditOperation,
        credits: int,
        trip_id: Optional[str],
    ) -> None:
        """Best-effort audit row; failures never undo the debit."""
        db = self._session_factory()
        try:
            db.add(CreditUsageLog(
                user_id=user_id,
                trip_id=trip_id,
                operation=operation.value,
                credits=credits,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to write credit usage log for user={user_id}: {e}")
        finally:
            db.close()

    def record_model_usage(
        self,
        user_id: str,
        operation: CreditOperation,
        model: str,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        duration_ms: Optional[int],
        trip_id: Optional[str] = None,
    ) -> None:
        """Best-effort token usage row for a completed model call (0 credits)."""
        db = self._session_factory()
        try:
            db.add(CreditUsageLog(
                user_id=user_id,
                trip_id=trip_id,
                operation=operation.value,
                credits=0,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to record model usage for user={user_id}: {e}")
        finally:
            db.close()
