"""Bearer token authentication dependencies."""

from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from database import get_db
from models.user import APIKey, User

bearer_scheme = HTTPBearer()


def authenticate_token(db: Session, token: str) -> User | None:
    """Resolve an API key to its user; None when unknown."""
    if not token:
        return None
    api_key = db.query(APIKey).filter(APIKey.key == token).first()
    if not api_key:
        return None
    return db.query(User).filter(User.id == api_key.user_id).first()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """FastAPI dependency: validate Bearer token and return the User."""
    user = authenticate_token(db, credentials.credentials)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    return user
