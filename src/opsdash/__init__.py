"""Account, onboarding and audit service for the operations dashboard."""

from .api import app

__all__ = ["app"]
