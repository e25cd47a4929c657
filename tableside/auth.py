import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models
from .config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from .db import get_db
from .permissions import ANONYMOUS, Actor, parse_role

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _user_from_token(db: Session, token: Optional[str]) -> Optional[models.User]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        logger.info("rejected bearer token")
        return None
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_current_user_profile(
    token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> Optional[models.User]:
    return _user_from_token(db, token)


def get_current_user(
    user: Optional[models.User] = Depends(get_current_user_profile),
) -> models.User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_current_actor(
    user: Optional[models.User] = Depends(get_current_user_profile),
) -> Actor:
    """Resolve the caller; anything unresolvable is the anonymous actor."""
    if user is None:
        return ANONYMOUS
    role = parse_role(user.role)
    if role is None:
        return ANONYMOUS
    return Actor(user_id=user.id, role=role)


def require_permission(permission: str):
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.is_authenticated:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if not actor.can(permission):
            raise HTTPException(status_code=403, detail="Permission denied")
        return actor

    return dependency
