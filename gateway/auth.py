"""Bearer token authentication dependency."""

from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from database import get_db
from models.user import APIKey, UserProfile

bearer_scheme = HTTPBearer()


def authenticate_token(token: str, db: Session) -> UserProfile | None:
    """Return the active user owning *token*, or None."""
    if not token:
        return None
    api_key = db.query(APIKey).filter(APIKey.key == token).first()
    if not api_key:
        return None
    user = db.query(UserProfile).filter(UserProfile.id == api_key.user_id).first()
    if not user or not user.is_active:
        return None
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> UserProfile:
    """FastAPI dependency: validate Bearer token and return UserProfile."""
    user = authenticate_token(credentials.credentials, db)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )
    return user
