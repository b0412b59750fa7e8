"""Auth routes — local accounts; a credit account is opened on signup."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.auth import create_access_token, get_current_user, hash_password, verify_password
from backend.database import get_db
from backend.models_db import User

router = APIRouter()


class SignUpRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(default="", max_length=255)


class SignInRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    credits_balance: int


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


def _normalise_email(email: str) -> str:
    return email.strip().lower()


def _profile(request: Request, user: User) -> UserResponse:
    ledger = request.app.state.ledger
    return UserResponse(id=user.id, email=user.email, name=user.name, credits_balance=ledger.get_balance(user.id))


def _session_for(request: Request, user: User) -> AuthResponse:
    return AuthResponse(user=_profile(request, user), token=create_access_token(user.id))


@router.post("/auth/signup", response_model=AuthResponse)
async def signup(body: SignUpRequest, request: Request, db: Session = Depends(get_db)):
    """Register a traveller and open their credit account."""
    email = _normalise_email(body.email)
    if db.query(User.id).filter(User.email == email).first() is not None:
        raise HTTPException(status_code=409, detail="An account with this email already exists")

    user = User(email=email, password_hash=hash_password(body.password), name=body.name)
    db.add(user)
    db.commit()
    db.refresh(user)
    request.app.state.ledger.ensure_account(user.id)
    return _session_for(request, user)


@router.post("/auth/login", response_model=AuthResponse)
async def login(body: SignInRequest, request: Request, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == _normalise_email(body.email)).first()
    if user is None or not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return _session_for(request, user)


@router.get("/auth/me", response_model=UserResponse)
async def get_me(request: Request, current_user: User = Depends(get_current_user)):
    return _profile(request, current_user)
