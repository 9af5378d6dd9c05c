"""Admin-issued invitations that bootstrap pre-approved accounts."""

import logging
import secrets
from datetime import timedelta
from typing import List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from . import audit
from .accounts import (
    ACCOUNT_CONFLICT,
    ACCOUNTS_CREATED,
    add_account,
    ensure_available,
    validate_email,
    validate_role,
    validate_username,
)
from .config import settings
from .database import Invitation, SessionLocal, utcnow
from .errors import Expired, Forbidden, NotFound, handle_store_error
from .models.user import User


logger = logging.getLogger(__name__)

# 32 random bytes, 64 hex characters
TOKEN_BYTES = 32

INVITATIONS_ISSUED = Counter(
    "invitations_issued_total", "Invitations issued", ["role"]
)


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def effective_status(invitation: Invitation) -> str:
    """Status as seen now: pending rows past their expiry read as expired."""
    if invitation.status == "pending" and utcnow() > invitation.expires_at:
        return "expired"
    return invitation.status


def _require_admin(actor: User) -> None:
    if actor is None or actor.role != "admin" or not actor.is_approved:
        raise Forbidden("Only admins can manage invitations")


def invite(actor: User, username: str, email: str, role: str) -> Invitation:
    """Issue an invitation valid for ``settings.invitation_ttl_days``."""
    _require_admin(actor)
    username = validate_username(username)
    email = validate_email(email)
    validate_role(role)

    session: Session = SessionLocal()
    try:
        ensure_available(session, username, email)
        now = utcnow()
        invitation = Invitation(
            username=username,
            email=email,
            role=role,
            token=generate_token(),
            invited_by=actor.id,
            invited_at=now,
            expires_at=now + timedelta(days=settings.invitation_ttl_days),
            status="pending",
        )
        session.add(invitation)
        audit.add_entry(
            session,
            actor.id,
            actor.username,
            "invite_user",
            "user_management",
            f"Invited {username} <{email}> as {role}",
        )
        session.commit()
        session.refresh(invitation)
        INVITATIONS_ISSUED.labels(role=role).inc()
        logger.info("invitation issued for %s role=%s by %s", username, role, actor.username)
        return invitation
    except Exception as exc:
        handle_store_error(session, exc, conflict_message=ACCOUNT_CONFLICT)
    finally:
        session.close()


def _load_pending(session: Session, token: str) -> Invitation:
    invitation = (
        session.query(Invitation)
        .filter(Invitation.token == token, Invitation.status == "pending")
        .first()
    )
    if invitation is None:
        raise NotFound("Invitation not found or already used")
    if utcnow() > invitation.expires_at:
        raise Expired()
    return invitation


def get_invitation(token: str) -> Invitation:
    """Look up a redeemable invitation by token."""
    session: Session = SessionLocal()
    try:
        return _load_pending(session, token)
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def accept(token: str, password: str) -> int:
    """Redeem ``token`` and return the id of the new, approved account.

    The pending -> accepted flip runs first and only matches a row that is
    still pending, so of two concurrent redemptions at most one gets past it.
    The account insert commits in the same transaction.
    """
    session: Session = SessionLocal()
    try:
        invitation = _load_pending(session, token)
        result = session.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id, Invitation.status == "pending")
            .values(status="accepted", accepted_at=utcnow())
        )
        if result.rowcount != 1:
            raise NotFound("Invitation not found or already used")
        user = add_account(
            session,
            invitation.username,
            password,
            invitation.email,
            invitation.role,
            approved=True,
            invited_by=invitation.invited_by,
            ignore_invitation_id=invitation.id,
        )
        audit.add_entry(
            session,
            user.id,
            user.username,
            "accept_invitation",
            "user_management",
            f"Accepted invitation #{invitation.id} as {invitation.role}",
        )
        session.commit()
        ACCOUNTS_CREATED.labels(source="invitation").inc()
        logger.info("invitation #%s accepted by %s", invitation.id, user.username)
        return user.id
    except IntegrityError as exc:
        # Lost a race with another redemption of the same token.
        session.rollback()
        raise NotFound("Invitation not found or already used") from exc
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def revoke(actor: User, invitation_id: int) -> None:
    """Delete an invitation so its token can no longer be redeemed."""
    _require_admin(actor)
    session: Session = SessionLocal()
    try:
        invitation = session.get(Invitation, invitation_id)
        if invitation is None:
            raise NotFound("Invitation not found")
        username = invitation.username
        session.delete(invitation)
        audit.add_entry(
            session,
            actor.id,
            actor.username,
            "revoke_invitation",
            "user_management",
            f"Revoked invitation #{invitation_id} for {username}",
        )
        session.commit()
        logger.info("invitation #%s revoked by %s", invitation_id, actor.username)
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def list_invitations() -> List[Tuple[Invitation, Optional[str]]]:
    """Return ``(invitation, inviter username)`` pairs, newest first."""
    inviter = aliased(User)
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(Invitation, inviter.username)
            .outerjoin(inviter, inviter.id == Invitation.invited_by)
            .order_by(Invitation.invited_at.desc(), Invitation.id.desc())
            .all()
        )
        return [(invitation, inviter_name) for invitation, inviter_name in rows]
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()
