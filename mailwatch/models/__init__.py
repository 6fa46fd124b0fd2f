"""
SQLAlchemy models for mailwatch.

This package contains:
- UserCredential: Gmail OAuth tokens and the per-user sync watermark
"""

from mailwatch.models.user_credential import UserCredential

__all__ = ["UserCredential"]
