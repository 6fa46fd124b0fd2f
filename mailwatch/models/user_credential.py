"""
UserCredential model - one row per connected Gmail account.

Holds everything the webhook needs to sync a mailbox:
- OAuth tokens saved by the browser after the PKCE flow
- PKCE code verifier (saved before the redirect to Google)
- history_id: last processed Gmail historyId (sync watermark)
- watch_expiration: when the Gmail push watch lapses
"""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from mailwatch.database import Base


class UserCredential(Base):
    """
    Gmail credentials and sync state, keyed by Cognito user id.

    history_id is stored as the decimal string Gmail hands out and is only
    ever replaced by a numerically greater value.
    """
    __tablename__ = "user_credentials"

    user_id = Column(String(128), primary_key=True)

    # ============ OAUTH TOKENS ============
    access_token = Column(Text)
    refresh_token = Column(Text)
    id_token = Column(Text)
    code_verifier = Column(String(256))
    token_expiry = Column(DateTime)

    # ============ SYNC STATE ============
    history_id = Column(String(32))
    watch_expiration = Column(DateTime)

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<UserCredential(user_id={self.user_id}, history_id={self.history_id})>"

    def to_dict(self) -> dict:
        """Return all fields for the user-data API."""
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "code_verifier": self.code_verifier,
            "token_expiry": self.token_expiry.isoformat() if self.token_expiry else None,
            "history_id": self.history_id,
            "watch_expiration": self.watch_expiration.isoformat() if self.watch_expiration else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None
        }
