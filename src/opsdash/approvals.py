"""Self-registration and the admin approval workflow.

A registration creates an unapproved account together with one pending
approval request. An admin then approves (the account becomes usable) or
rejects (the account stays unapproved for good; it can only be deleted).
"""

import logging
from typing import List, Tuple

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit
from .accounts import ACCOUNT_CONFLICT, ACCOUNTS_CREATED, add_account, validate_role
from .database import ApprovalRequest, SessionLocal, utcnow
from .errors import Conflict, Forbidden, NotFound, ValidationError, handle_store_error
from .models.user import User


logger = logging.getLogger(__name__)

SELF_SERVICE_ROLES = ("write", "readonly")
OUTCOMES = ("approved", "rejected")

APPROVAL_DECISIONS = Counter(
    "approval_decisions_total", "Approval decisions by outcome", ["outcome"]
)


def register(username: str, password: str, email: str, role: str) -> int:
    """Create an unapproved account plus its pending request; return the account id."""
    validate_role(role, SELF_SERVICE_ROLES)
    session: Session = SessionLocal()
    try:
        user = add_account(session, username, password, email, role, approved=False)
        session.add(
            ApprovalRequest(
                user_id=user.id,
                requested_role=role,
                requested_at=utcnow(),
                status="pending",
            )
        )
        audit.add_entry(
            session,
            user.id,
            user.username,
            "register",
            "user_management",
            f"Registered requesting {role} access",
        )
        session.commit()
        ACCOUNTS_CREATED.labels(source="registration").inc()
        logger.info("registration from %s awaiting approval", user.username)
        return user.id
    except Exception as exc:
        handle_store_error(session, exc, conflict_message=ACCOUNT_CONFLICT)
    finally:
        session.close()


def decide(actor: User, request_id: int, outcome: str) -> ApprovalRequest:
    """Record an admin decision on a pending request.

    Approval flips the request and the requester's approval flag in one
    commit; rejection only touches the request.
    """
    if actor is None or actor.role != "admin" or not actor.is_approved:
        raise Forbidden("Only admins can review registrations")
    if outcome not in OUTCOMES:
        raise ValidationError(f"Status must be one of: {', '.join(OUTCOMES)}")

    session: Session = SessionLocal()
    try:
        request = session.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFound("Approval request not found")
        if request.status != "pending":
            raise Conflict(f"Request has already been {request.status}")

        requester = session.get(User, request.user_id)
        result = session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request_id, ApprovalRequest.status == "pending")
            .values(status=outcome, reviewed_by=actor.id, reviewed_at=utcnow())
        )
        if result.rowcount != 1:
            raise Conflict("Request has already been reviewed")
        if outcome == "approved":
            session.execute(
                update(User).where(User.id == request.user_id).values(is_approved=True)
            )
        audit.add_entry(
            session,
            actor.id,
            actor.username,
            "approve_user" if outcome == "approved" else "reject_user",
            "user_management",
            f"{outcome.capitalize()} user request #{request_id} ({requester.username})",
        )
        session.commit()
        session.refresh(request)
        APPROVAL_DECISIONS.labels(outcome=outcome).inc()
        logger.info(
            "request #%s for %s %s by %s", request_id, requester.username, outcome, actor.username
        )
        return request
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()


def list_pending() -> List[Tuple[ApprovalRequest, str, str]]:
    """Return ``(request, username, email)`` for pending requests, newest first."""
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(ApprovalRequest, User.username, User.email)
            .join(User, User.id == ApprovalRequest.user_id)
            .filter(ApprovalRequest.status == "pending")
            .order_by(ApprovalRequest.requested_at.desc(), ApprovalRequest.id.desc())
            .all()
        )
        return [(request, username, email) for request, username, email in rows]
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()
