"""Credit pre-check dependencies for metered planner routes.

The ledger's atomic charge is what actually protects the balance; this check
only rejects requests that cannot possibly be paid for before any work
(or phase change) starts.
"""

from fastapi import Depends, Request

from backend.auth import current_user_id
from backend.errors import InsufficientCreditsError
from backend.services.credits import CreditOperation, credit_cost


def require_credits(operation: CreditOperation, units: int = 1):
    """Return a FastAPI dependency that checks the balance covers ``units`` of ``operation``."""
    async def _check(request: Request, user_id: str = Depends(current_user_id)) -> str:
        required = credit_cost(operation) * units
        balance = request.app.state.ledger.get_balance(user_id)
        if balance < required:
            raise InsufficientCreditsError(required=required, balance=balance)
        return user_id
    return _check
