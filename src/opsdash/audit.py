"""Append-only audit trail of state-changing actions.

Writes never fail the action being audited. Inside a service transaction the
entry is added under a SAVEPOINT so a broken insert only loses the entry;
standalone writes run in their own session and swallow store errors.
"""

import logging
from typing import List, Optional

from prometheus_client import Counter
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import settings
from .database import AuditLogEntry, SessionLocal, utcnow
from .errors import handle_store_error


logger = logging.getLogger(__name__)

AUDIT_WRITE_FAILURES = Counter(
    "audit_write_failures_total", "Audit log entries that could not be written"
)


def add_entry(
    session: Session,
    user_id: int,
    username: str,
    action: str,
    resource: str,
    details: Optional[str] = None,
) -> None:
    """Append an entry to the caller's open transaction.

    Pending changes are flushed first so their errors still reach the caller.
    """
    session.flush()
    try:
        with session.begin_nested():
            session.add(
                AuditLogEntry(
                    user_id=user_id,
                    username=username,
                    action=action,
                    resource=resource,
                    details=details or "",
                    timestamp=utcnow(),
                )
            )
    except Exception:
        AUDIT_WRITE_FAILURES.inc()
        logger.exception(
            "audit entry dropped user=%s action=%s resource=%s", username, action, resource
        )


def record(
    user_id: int,
    username: str,
    action: str,
    resource: str,
    details: Optional[str] = None,
) -> bool:
    """Write a single entry in its own transaction.

    Returns whether the entry was stored; failures are logged only.
    """
    session: Session = SessionLocal()
    try:
        session.add(
            AuditLogEntry(
                user_id=user_id,
                username=username,
                action=action,
                resource=resource,
                details=details or "",
                timestamp=utcnow(),
            )
        )
        session.commit()
        return True
    except Exception:
        session.rollback()
        AUDIT_WRITE_FAILURES.inc()
        logger.exception(
            "audit entry dropped user=%s action=%s resource=%s", username, action, resource
        )
        return False
    finally:
        session.close()


def list_entries(
    limit: Optional[int] = None,
    search: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
) -> List[AuditLogEntry]:
    """Return the newest entries first.

    ``search`` is a case-insensitive substring match over username, action,
    resource and details; ``action`` and ``resource`` match exactly.
    """
    if limit is None:
        limit = settings.audit_log_default_limit
    limit = max(1, min(limit, settings.audit_log_max_limit))

    session: Session = SessionLocal()
    try:
        query = session.query(AuditLogEntry)
        if search:
            pattern = f"%{search.lower()}%"
            query = query.filter(
                or_(
                    AuditLogEntry.username.ilike(pattern),
                    AuditLogEntry.action.ilike(pattern),
                    AuditLogEntry.resource.ilike(pattern),
                    AuditLogEntry.details.ilike(pattern),
                )
            )
        if action:
            query = query.filter(AuditLogEntry.action == action)
        if resource:
            query = query.filter(AuditLogEntry.resource == resource)
        return (
            query.order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
            .limit(limit)
            .all()
        )
    except Exception as exc:
        handle_store_error(session, exc)
    finally:
        session.close()
