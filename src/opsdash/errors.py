"""Domain errors raised by the account, invitation and approval services.

Every error carries the HTTP status it is rendered with, so the API layer
needs a single exception handler.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session


logger = logging.getLogger(__name__)


class OpsDashError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(OpsDashError):
    status_code = 400
    default_message = "Invalid input"


class Conflict(OpsDashError):
    status_code = 400
    default_message = "Already exists"


class InvalidCredentials(OpsDashError):
    status_code = 401
    default_message = "Invalid username or password"


class Forbidden(OpsDashError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(OpsDashError):
    status_code = 404
    default_message = "Not found"


class Expired(OpsDashError):
    status_code = 400
    default_message = "Invitation has expired"


class Internal(OpsDashError):
    status_code = 500
    default_message = "Internal error"


def handle_store_error(session: Session, exc: Exception, conflict_message: str | None = None) -> None:
    """Rollback the session and re-raise ``exc`` as a domain error.

    Domain errors pass through unchanged. Unique constraint violations become
    :class:`Conflict` when ``conflict_message`` is given; any other store
    failure becomes :class:`Internal` without leaking details.
    """
    session.rollback()
    if isinstance(exc, OpsDashError):
        raise exc
    if conflict_message is not None and isinstance(exc, IntegrityError):
        logger.info("integrity error: %s", conflict_message)
        raise Conflict(conflict_message) from exc
    logger.exception("store error", exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise Internal("Database error") from exc
    raise Internal() from exc
