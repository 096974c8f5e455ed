# market_oracle/core/security.py
from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from market_oracle.config import get_settings
from market_oracle.core.access import Caller
from market_oracle.db.session import get_db
from market_oracle.models.user import User

settings = get_settings()
pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer = HTTPBearer()
optional_bearer = HTTPBearer(auto_error=False)

JWT_SECRET = settings.JWT_SECRET
JWT_ALG = settings.JWT_ALG
ACCESS_MIN = settings.JWT_ACCESS_MIN
REFRESH_DAYS = settings.JWT_REFRESH_DAYS


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _ts(d: dt.datetime) -> int:
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    else:
        d = d.astimezone(dt.timezone.utc)
    return int(d.timestamp())


def hash_password(plain: str) -> str:
    return pwd_ctx.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_ctx.verify(plain, hashed)


def _encode(sub: str, *, minutes: int | None = None, days: int | None = None, typ: str = "access") -> str:
    now = _utc_now()
    if minutes is None and days is None:
        minutes = 15
    exp_dt = now + (dt.timedelta(minutes=minutes) if minutes is not None else dt.timedelta(days=days))
    payload = {
        "sub": sub,
        "typ": typ,
        "iat": _ts(now),
        "exp": _ts(exp_dt),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def create_access(sub: str) -> str:
    return _encode(sub, minutes=ACCESS_MIN, typ="access")


def create_refresh(sub: str) -> str:
    return _encode(sub, days=REFRESH_DAYS, typ="refresh")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise ValueError(str(e)) from e


def subject_from_access_token(token: str) -> str:
    payload = decode_token(token)
    if payload.get("typ") != "access":
        raise ValueError("Not an access token")
    email = payload.get("sub")
    if not email:
        raise ValueError("Missing subject")
    return email


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    """FastAPI dependency that validates an access token and returns an active user."""
    try:
        email = subject_from_access_token(creds.credentials)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    user = db.query(User).filter(User.email == email, User.is_active.is_(True)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return user


def caller_from_token(token: Optional[str], db: Session) -> Caller:
    """Resolve a bearer token to a caller; anything unusable yields an anonymous caller."""
    if not token:
        return Caller.anonymous()
    try:
        email = subject_from_access_token(token)
    except ValueError:
        return Caller.anonymous()
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        return Caller.anonymous()
    return Caller.from_user(user)


def get_optional_caller(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer),
    db: Session = Depends(get_db),
) -> Caller:
    """Like ``get_current_user`` but never rejects the request."""
    return caller_from_token(creds.credentials if creds else None, db)
