from functools import lru_cache
from typing import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from ptw.core.config import get_settings
from ptw.core.permit import PermitLifecycleService
from ptw.core.security import Actor, decode_token
from ptw.db.session import SessionLocal
from ptw.services import build_notifier

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_lifecycle_service() -> PermitLifecycleService:
    """One service per process so every request shares the permit lock registry."""
    settings = get_settings()
    return PermitLifecycleService(
        SessionLocal,
        notifier=build_notifier(settings),
        settings=settings,
    )


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Get the caller from the bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    actor = decode_token(token)
    if actor is None:
        raise credentials_exception
    return actor
