"""Credit balance route."""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from backend.auth import current_user_id

router = APIRouter()


class CreditBalanceResponse(BaseModel):
    balance: int


@router.get("/credits", response_model=CreditBalanceResponse)
async def get_credits(request: Request, user_id: str = Depends(current_user_id)):
    return CreditBalanceResponse(balance=request.app.state.ledger.get_balance(user_id))
