"""Credential store and account administration."""

import logging
import re
from typing import Dict, List, Optional

from prometheus_client import Counter
from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import audit
from .auth import burn_password_check, hash_password, verify_password
from .config import settings
from .database import Invitation, SessionLocal, UserPreference, utcnow
from .errors import (
    Conflict,
    Forbidden,
    InvalidCredentials,
    NotFound,
    ValidationError,
    handle_store_error,
)
from .models.user import ADMIN_USERNAME, ROLES, User


logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ACCOUNT_CONFLICT = "Username or email already exists"

ACCOUNTS_CREATED = Counter(
    "accounts_created_total", "Accounts created", ["source"]
)
LOGIN_ATTEMPTS = Counter(
    "login_attempts_total", "Login attempts by outcome", ["outcome"]
)


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_RE.match(username):
        raise ValidationError(
            "Username must be 3-50 characters of letters, digits, '.', '_' or '-'"
        )
    return username


def validate_email(email: str) -> str:
    email = (email or "").strip().lower()
    if len(email) > 255 or not EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    return email


def validate_password(password: str) -> str:
    if password is None or len(password) < settings.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.min_password_length} characters"
        )
    return password


def validate_role(role: str, allowed=ROLES) -> str:
    if role not in allowed:
        raise ValidationError(f"Role must be one of: {', '.join(allowed)}")
    return role


def ensure_available(
    session: Session,
    username: str,
    email: str,
    ignore_invitation_id: Optional[int] = None,
) -> None:
    """Raise :class:`Conflict` if an account or invitation holds the name or email."""
    taken = (
        session.query(User.id)
        .filter(or_(User.username == username, User.email == email))
        .first()
    )
    if taken:
        raise Conflict(ACCOUNT_CONFLICT)

    reserved = session.query(Invitation.id).filter(
        or_(Invitation.username == username, Invitation.email == email),
        Invitation.status == "pending",
    )
    if ignore_invitation_id is not None:
        reserved = reserved.filter(Invitation.id != ignore_invitation_id)
    if reserved.first():
        raise Conflict(ACCOUNT_CONFLICT)


def add_account(
    session: Session,
    username: str,
    password: str,
    email: str,
    role: str,
    approved: bool = False,
    invited_by: Optional[int] = None,
    ignore_invitation_id: Optional[int] = None,
) -> User:
    """Stage a new account in ``session`` and flush it.

    The caller owns the transaction; a concurrent duplicate surfaces as an
    ``IntegrityError`` from the flush or the commit.
    """
    username = validate_username(username)
    email = validate_email(email)
    validate_password(password)
    validate_role(role)
    ensure_available(session, username, email, ignore_invitation_id)

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_approved=approved,
        invited_by=invited_by,
        created_at=utcnow(),
    )
    session.add(user)
    session.flush()
    return user


def create_account(
    username: str,
    password: str,
    email: str,
    role: str,
    approved: bool = False,
) -> int:
    """Create a standalone account and return its id."""
    session: Session = SessionLocal()
    try:
        user = add_account(session, username, password, email, role, approved=approved)
        session.commit()
        ACCOUNTS_CREATED.labels(source="direct").inc()
        logger.info("created account %s role=%s", user.username, role)
        return user.id
    except Exception as exc:
        handle_store_error(session, exc, conflict_message=ACCOUNT_CONFLICT)
    finally:
        session.close()


def verify_credentials(username: str, password: str) -> User:
    """Return the account for a correct username/password pair.

    Unknown users and wrong passwords raise the same
    :class:`InvalidCredentials` error.
    """
    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(User.username == (username or "").strip()).first()
        if user is None:
            burn_password_check(password or "")
            LOGIN_ATTEMPTS.labels(outcome="invalid").inc()
            raise InvalidCredentials()
        if not verify_password(password or "", user.password_hash):
            LOGIN_ATTEMPTS.labels(outcome="invalid").inc()
            raise InvalidCredentials()
        LOGIN_ATTEMPTS.labels(outcome="approved" if user.is_approved else "unapproved").inc()
        return user
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def mark_login(user_id: int) -> None:
    """Best-effort update of the last-login timestamp."""
    session: Session = SessionLocal()
    try:
        session.query(User).filter(User.id == user_id).update(
            {User.last_login: utcnow()}, synchronize_session=False
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("could not update last login for user %s", user_id, exc_info=True)
    finally:
        session.close()


def get_account(user_id: int) -> User:
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def list_accounts() -> List[User]:
    """Return all accounts, oldest first."""
    session: Session = SessionLocal()
    try:
        return session.query(User).order_by(User.id).all()
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def update_role(actor: User, user_id: int, role: str) -> User:
    """Change another account's role. Admin only."""
    if actor.role != "admin":
        raise Forbidden("Only admins can change roles")
    validate_role(role)

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        if user.username == ADMIN_USERNAME:
            raise Forbidden("The admin account's role cannot be changed")
        previous = user.role
        user.role = role
        audit.add_entry(
            session,
            actor.id,
            actor.username,
            "change_role",
            "user_management",
            f"Changed role of {user.username} from {previous} to {role}",
        )
        session.commit()
        session.refresh(user)
        logger.info("role of %s changed %s -> %s by %s", user.username, previous, role, actor.username)
        return user
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def delete_account(actor: User, user_id: int) -> None:
    """Delete an account and everything hanging off it.

    The ``admin`` account is permanent and nobody may delete themself.
    """
    if actor.role != "admin":
        raise Forbidden("Only admins can delete users")
    if actor.id == user_id:
        raise Forbidden("You cannot delete your own account")

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        if user.username == ADMIN_USERNAME:
            raise Forbidden("The admin account cannot be deleted")
        username = user.username
        session.delete(user)
        audit.add_entry(
            session,
            actor.id,
            actor.username,
            "delete_user",
            "user_management",
            f"Deleted user {username} (#{user_id})",
        )
        session.commit()
        logger.info("deleted account %s by %s", username, actor.username)
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def ensure_admin_account() -> None:
    """Create the permanent ``admin`` account when it is missing."""
    session: Session = SessionLocal()
    try:
        if session.query(User.id).filter(User.username == ADMIN_USERNAME).first():
            return
        session.add(
            User(
                username=ADMIN_USERNAME,
                email="admin@localhost",
                password_hash=hash_password(settings.admin_password),
                role="admin",
                is_approved=True,
                created_at=utcnow(),
            )
        )
        session.commit()
        ACCOUNTS_CREATED.labels(source="bootstrap").inc()
        logger.info("bootstrapped admin account")
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def get_preferences(user_id: int) -> Dict[str, str]:
    session: Session = SessionLocal()
    try:
        rows = session.query(UserPreference).filter(UserPreference.user_id == user_id).all()
        return {row.key: row.value for row in rows}
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def set_preference(user_id: int, key: str, value: str) -> Dict[str, str]:
    """Insert or replace one preference and return all of the user's preferences."""
    key = (key or "").strip()
    if not key or len(key) > 100:
        raise ValidationError("Preference key must be 1-100 characters")

    session: Session = SessionLocal()
    try:
        row = (
            session.query(UserPreference)
            .filter(UserPreference.user_id == user_id, UserPreference.key == key)
            .first()
        )
        if row is None:
            session.add(UserPreference(user_id=user_id, key=key, value=value))
        else:
            row.value = value
        session.commit()
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()
    return get_preferences(user_id)
