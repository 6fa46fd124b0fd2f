"""
Exception types raised by the mailwatch services.

The webhook turns every one of these into a failed sync result (HTTP 500);
the user-facing routers map them onto HTTP errors.
"""

from typing import Optional


class MailwatchError(Exception):
    """Base class for all mailwatch errors."""


class MalformedPayload(MailwatchError):
    """Push envelope is missing, undecodable, or lacks required fields."""


class ConfigurationError(MailwatchError):
    """A required setting (user pool id, GCP project) is not configured."""


class UpstreamError(MailwatchError):
    """
    Transport or auth fault talking to an external service.

    Attributes:
        status: HTTP status reported by the upstream, when one was received
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DirectoryLookupError(UpstreamError, LookupError):
    """The user directory (Cognito) could not be queried."""
