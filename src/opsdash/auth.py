"""Password hashing, session tokens and the per-request access gate."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Dict

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .database import RevokedToken, SessionLocal, utcnow
from .errors import Forbidden, InvalidCredentials, ValidationError, handle_store_error
from .models.user import User


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# bcrypt only looks at the first 72 bytes of its input
BCRYPT_MAX_BYTES = 72

ROLE_LEVELS: Dict[str, int] = {"readonly": 0, "write": 1, "admin": 2}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _peppered(password: str) -> bytes:
    data = (settings.password_pepper + password).encode("utf-8")
    if len(data) > BCRYPT_MAX_BYTES:
        raise ValidationError("Password is too long")
    return data


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(_peppered(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_peppered(password), password_hash.encode("utf-8"))
    except (ValidationError, ValueError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password(uuid.uuid4().hex)


def burn_password_check(password: str) -> None:
    """Spend the same bcrypt time as a real check when the user is unknown."""
    verify_password(password, _dummy_hash())


def create_access_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def get_token_payload(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> dict:
    if credentials is None:
        raise InvalidCredentials("Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "jti", "exp"]},
        )
    except jwt.PyJWTError:
        raise InvalidCredentials("Invalid token")

    if payload.get("type") != "access":
        raise InvalidCredentials("Invalid token")
    if db.get(RevokedToken, payload["jti"]) is not None:
        raise InvalidCredentials("Session has ended")
    return payload


def get_current_user(
    payload: dict = Depends(get_token_payload),
    db: Session = Depends(get_db),
) -> User:
    """Reload the caller's account so role and approval changes apply at once."""
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidCredentials("Invalid token")

    user = db.get(User, user_id)
    if user is None:
        raise InvalidCredentials("Invalid token")
    if not user.is_approved:
        raise Forbidden("Account is pending approval")
    return user


def has_role(user: User, level: str) -> bool:
    """Return True when ``user`` may perform an action tagged ``level``."""
    if not user.is_approved:
        return False
    return ROLE_LEVELS.get(user.role, -1) >= ROLE_LEVELS[level]


def require_role(level: str) -> Callable[..., User]:
    """Build a dependency that admits approved users holding at least ``level``."""
    if level not in ROLE_LEVELS:
        raise ValueError(f"unknown role level {level!r}")

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_role(current_user, level):
            logger.info(
                "denied user=%s role=%s required=%s",
                current_user.username,
                current_user.role,
                level,
            )
            raise Forbidden(f"{level} access required")
        return current_user

    return dependency


def revoke_token(payload: dict, user_id: int) -> None:
    """Persist the token's id so it is refused until it expires.

    Entries for tokens that have already expired are pruned on the way.
    """
    session: Session = SessionLocal()
    try:
        session.query(RevokedToken).filter(RevokedToken.expires_at < utcnow()).delete(
            synchronize_session=False
        )
        session.merge(
            RevokedToken(
                jti=payload["jti"],
                user_id=user_id,
                revoked_at=utcnow(),
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc).replace(tzinfo=None),
            )
        )
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()
