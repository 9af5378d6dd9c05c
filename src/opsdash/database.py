"""Database setup for accounts, onboarding and the audit trail."""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database.
        kwargs["poolclass"] = StaticPool
    return kwargs


DATABASE_URL = settings.database_url

engine = create_engine(DATABASE_URL, future=True, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if engine.dialect.name == "sqlite":
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Invitation(Base):
    """An admin-issued, single-use token that bootstraps an approved account."""

    __tablename__ = "invitations"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    username = Column(String(50), unique=True, nullable=False)
    role = Column(String(20), nullable=False)
    token = Column(String(128), unique=True, index=True, nullable=False)
    invited_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)
    invited_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, accepted, expired
    accepted_at = Column(DateTime, nullable=True)


class ApprovalRequest(Base):
    """A self-registered account waiting for an admin decision."""

    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    requested_role = Column(String(20), nullable=False)
    requested_at = Column(DateTime, default=utcnow, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, approved, rejected
    reviewed_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)


class AuditLogEntry(Base):
    """Append-only record of a state-changing action."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    username = Column(String(50), nullable=False)
    action = Column(String(100), index=True, nullable=False)
    resource = Column(String(100), index=True, nullable=False)
    details = Column(Text, default="", nullable=False)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)


class UserPreference(Base):
    """Per-account dashboard setting."""

    __tablename__ = "user_preferences"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_user_preference_key"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    key = Column(String(100), nullable=False)
    value = Column(Text, default="", nullable=False)


class RevokedToken(Base):
    """Session token that was explicitly logged out before it expired."""

    __tablename__ = "revoked_tokens"

    jti = Column(String(64), primary_key=True)
    user_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    revoked_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)


from .models import user  # noqa: E402,F401


def init_db() -> None:
    """Create database tables if they do not exist.

    The admin account is seeded separately by ``accounts.ensure_admin_account``.
    """
    Base.metadata.create_all(bind=engine)
