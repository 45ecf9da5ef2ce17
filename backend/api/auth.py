"""Registration, token and identity endpoints."""

from __future__ import annotations

import logging
import uuid

import bcrypt
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import APIKey, User
from schemas.auth import MeResponse, RegisterRequest, TokenRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def _hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def _verify_password(stored_hash: str, password: str) -> bool:
    """Verify password against stored bcrypt hash."""
    if not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), stored_hash.encode())
    except (ValueError, UnicodeDecodeError):
        return False


def _issue_key(db: Session, user: User) -> APIKey:
    api_key = db.query(APIKey).filter(APIKey.user_id == user.id).first()
    if api_key:
        api_key.key = str(uuid.uuid4())
    else:
        api_key = APIKey(user_id=user.id, key=str(uuid.uuid4()))
        db.add(api_key)
    db.commit()
    db.refresh(api_key)
    return api_key


@router.post(
    "/register/",
    response_model=TokenResponse,
    status_code=201,
    responses={409: {"description": "Email already registered"}},
)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    user = User(
        email=payload.email.lower(),
        password_hash=_hash_password(payload.password),
        name=payload.name,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered.")
    logger.info("Registered user %s", user.id)
    return {"key": _issue_key(db, user).key}


@router.post("/token/", response_model=TokenResponse, responses={401: {"description": "Invalid credentials"}})
def obtain_token(payload: TokenRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email.lower()).first()
    if not user or not _verify_password(user.password_hash, payload.password):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return {"key": _issue_key(db, user).key}


@router.get("/me/", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    return {"id": user.id, "email": user.email, "name": user.name, "role": user.role}
