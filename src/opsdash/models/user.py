from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from ..database import Base, utcnow


ROLES = ("admin", "write", "readonly")
ADMIN_USERNAME = "admin"


class User(Base):
    """SQLAlchemy model for dashboard accounts."""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(128), nullable=False)
    role = Column(String(20), default="readonly", nullable=False)
    is_approved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_login = Column(DateTime, nullable=True)
    invited_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)

    audit_entries = relationship(
        "AuditLogEntry", cascade="all, delete-orphan", passive_deletes=True
    )
    approval_requests = relationship(
        "ApprovalRequest",
        foreign_keys="ApprovalRequest.user_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    preferences = relationship(
        "UserPreference", cascade="all, delete-orphan", passive_deletes=True
    )
    revoked_tokens = relationship(
        "RevokedToken", cascade="all, delete-orphan", passive_deletes=True
    )
