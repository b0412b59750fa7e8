"""
Tests for the credit ledger.

Validates:
1. Accounts open lazily with the starting balance
2. Charges never drive a balance below zero, also under concurrency
3. Refunds, grants and the monthly refill
4. Cost table overrides from the environment
5. Every debit and refund leaves a usage log row
"""

import threading

import pytest
from sqlalchemy import select

from backend.errors import InsufficientCreditsError
from backend.models_db import CreditUsageLog
from backend.services.credits import CreditLedger, CreditOperation, credit_cost


def _logs(session_factory, user_id):
    db = session_factory()
    try:
        return list(db.execute(
            select(CreditUsageLog).where(CreditUsageLog.user_id == user_id).order_by(CreditUsageLog.created_at)
        ).scalars())
    finally:
        db.close()


class TestBalance:
    """Test account opening and balance reads."""

    def test_new_account_gets_initial_credits(self, services):
        assert services.ledger.get_balance("alice") == 20

    def test_ensure_account_is_idempotent(self, services):
        services.ledger.ensure_account("alice")
        services.ledger.charge("alice", 5, CreditOperation.CONVERSATION)
        services.ledger.ensure_account("alice")
        assert services.ledger.get_balance("alice") == 15


class TestCharge:
    """Test debits."""

    def test_charge_returns_new_balance(self, services):
        assert services.ledger.charge("alice", 3, CreditOperation.PLAN_STRUCTURE) == 17

    def test_exact_balance_can_be_spent(self, services):
        assert services.ledger.charge("alice", 20, CreditOperation.PLAN_GENERATION) == 0

    def test_insufficient_balance_rejected_without_side_effect(self, services):
        services.ledger.charge("alice", 19, CreditOperation.CONVERSATION)
        with pytest.raises(InsufficientCreditsError) as exc:
            services.ledger.charge("alice", 3, CreditOperation.PLAN_STRUCTURE)
        assert exc.value.required == 3
        assert exc.value.balance == 1
        assert services.ledger.get_balance("alice") == 1

    def test_zero_charge_is_free(self, services):
        assert services.ledger.charge("alice", 0, CreditOperation.PLAN_GENERATION) == 20
        assert _logs(services.session_factory, "alice") == []

    def test_negative_charge_rejected(self, services):
        with pytest.raises(ValueError):
            services.ledger.charge("alice", -1, CreditOperation.CONVERSATION)

    def test_concurrent_charges_never_overdraw(self, services):
        """Ten threads each try to spend 3 of 20 credits: exactly six succeed."""
        services.ledger.ensure_account("alice")
        outcomes = []
        lock = threading.Lock()

        def spend():
            try:
                services.ledger.charge("alice", 3, CreditOperation.PLAN_STRUCTURE)
                result = "ok"
            except InsufficientCreditsError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=spend) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 6
        assert outcomes.count("rejected") == 4
        assert services.ledger.get_balance("alice") == 2


class TestRefundAndTopUp:
    """Test credits flowing back into an account."""

    def test_refund_restores_balance(self, services):
        services.ledger.charge("alice", 3, CreditOperation.PLAN_STRUCTURE)
        assert services.ledger.refund("alice", 3, CreditOperation.PLAN_STRUCTURE) == 20

    def test_zero_refund_is_noop(self, services):
        assert services.ledger.refund("alice", 0, CreditOperation.CONVERSATION) == 20

    def test_grant(self, services):
        assert services.ledger.grant("alice", 10) == 30

    def test_refill_raises_to_quota(self, services):
        services.ledger.charge("alice", 15, CreditOperation.CONVERSATION)
        assert services.ledger.refill_monthly("alice") == 20

    def test_refill_never_lowers(self, services):
        services.ledger.grant("alice", 10)
        assert services.ledger.refill_monthly("alice") == 30

    def test_custom_initial_balance(self, session_factory):
        ledger = CreditLedger(session_factory, initial_credits=0, monthly_quota=5)
        assert ledger.get_balance("bob") == 0
        assert ledger.refill_monthly("bob") == 5


class TestUsageLog:
    """Test the audit trail."""

    def test_charge_and_refund_logged(self, services):
        services.ledger.charge("alice", 3, CreditOperation.PLAN_STRUCTURE, trip_id="trip-1")
        services.ledger.refund("alice", 3, CreditOperation.PLAN_STRUCTURE, trip_id="trip-1")
        logs = _logs(services.session_factory, "alice")
        assert [(l.operation, l.credits) for l in logs] == [("plan_structure", 3), ("refund", -3)]
        assert all(l.trip_id == "trip-1" for l in logs)

    def test_model_usage_recorded_without_credits(self, services):
        services.ledger.record_model_usage("alice", CreditOperation.CONVERSATION, "claude-haiku-4-5", 120, 40, 900)
        (log,) = _logs(services.session_factory, "alice")
        assert log.credits == 0
        assert log.model == "claude-haiku-4-5"
        assert (log.input_tokens, log.output_tokens, log.duration_ms) == (120, 40, 900)


class TestCostTable:
    """Test the configurable cost policy."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CREDIT_COST_PLAN_STRUCTURE", raising=False)
        assert credit_cost(CreditOperation.CONVERSATION) == 1
        assert credit_cost(CreditOperation.PLAN_STRUCTURE) == 3
        assert credit_cost(CreditOperation.PLAN_ACTIVITIES) == 1

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CREDIT_COST_PLAN_STRUCTURE", "5")
        assert credit_cost(CreditOperation.PLAN_STRUCTURE) == 5
