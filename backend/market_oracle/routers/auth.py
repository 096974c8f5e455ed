# market_oracle/routers/auth.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from market_oracle.core.security import (
    create_access,
    create_refresh,
    decode_token,
    get_current_user,
    hash_password,
    verify_password,
)
from market_oracle.db.session import get_db
from market_oracle.models.user import User
from market_oracle.schemas.auth import LoginIn, RefreshIn, SignupIn, TokenPair, UserOut

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _pair(email: str) -> TokenPair:
    return TokenPair(access_token=create_access(email), refresh_token=create_refresh(email))


@router.post("/login", response_model=TokenPair)
def login(body: LoginIn, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == body.email).first()
    if not user or not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return _pair(user.email)


@router.post("/signup", response_model=TokenPair, status_code=status.HTTP_201_CREATED)
def signup(body: SignupIn, db: Session = Depends(get_db)):
    existing = db.query(User).filter(User.email == body.email).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    user = User(email=body.email, password_hash=hash_password(body.password), role="member")
    db.add(user)
    db.commit()
    db.refresh(user)
    return _pair(user.email)


@router.post("/refresh", response_model=TokenPair)
def refresh(body: RefreshIn):
    # Public endpoint: the refresh token in the body is the credential.
    try:
        payload = decode_token(body.refresh_token)
        if payload.get("typ") != "refresh":
            raise ValueError("Not a refresh token")
        email = payload.get("sub")
        if not email:
            raise ValueError("Missing subject")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    return _pair(email)


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return UserOut(id=user.id, email=user.email, is_active=user.is_active, role=user.role)
