"""
Gmail API access with per-user bearer tokens.

GmailClient wraps the googleapiclient resource so that:
- every call is made with the access token stored for the user
- every Google error surfaces as UpstreamError
- tests can swap the resource factory for a fake
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from mailwatch.errors import UpstreamError
from mailwatch.logger import get_logger

logger = get_logger(__name__)

# Everything the Google client stack raises for HTTP, auth and socket faults
GOOGLE_ERRORS = (HttpError, GoogleAuthError, HttpLib2Error, OSError)


@dataclass
class HistoryMessage:
    """A message reported by history.list as added."""
    id: str
    thread_id: str


@dataclass
class HistoryDelta:
    """Messages added since a start historyId."""
    history_id: str
    messages: List[HistoryMessage] = field(default_factory=list)


@dataclass
class MessageDetail:
    """Full message as returned by messages.get, with the common parts decoded."""
    id: str
    thread_id: str
    snippet: str = ""
    label_ids: List[str] = field(default_factory=list)
    subject: str = ""
    sender: str = ""
    body: str = ""
    raw: dict = field(default_factory=dict)


def build_gmail_service(access_token: str):
    """Create a Gmail v1 resource authorised with a bearer access token."""
    creds = Credentials(token=access_token)
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def _decode_body_data(data: str) -> str:
    # Gmail bodies are base64url without guaranteed padding
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def _get_body_from_parts(parts: list) -> str:
    """Recursively extract text/plain and text/html bodies from message parts."""
    body_text = ""
    for part in parts:
        mime_type = part.get("mimeType", "")

        if "parts" in part:
            body_text += _get_body_from_parts(part["parts"])
        elif mime_type in ["text/html", "text/plain"]:
            data = part.get("body", {}).get("data", "")
            if data:
                body_text += _decode_body_data(data)

    return body_text


def parse_message(msg: dict) -> MessageDetail:
    """Turn a messages.get response into a MessageDetail."""
    payload = msg.get("payload", {})

    subject = sender = None
    for h in payload.get("headers", []):
        if h.get("name") == "Subject":
            subject = h.get("value")
        if h.get("name") == "From":
            sender = h.get("value")

    body = ""
    if "parts" in payload:
        body = _get_body_from_parts(payload["parts"])
    elif payload.get("body", {}).get("data"):
        body = _decode_body_data(payload["body"]["data"])

    return MessageDetail(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId", ""),
        snippet=msg.get("snippet", ""),
        label_ids=list(msg.get("labelIds", [])),
        subject=subject or "",
        sender=sender or "",
        body=body,
        raw=msg
    )


def flatten_history(history: list) -> List[HistoryMessage]:
    """
    Flatten history.list entries into added messages, in order.

    Missing ids are kept as empty strings rather than dropped or raised on.
    """
    messages = []
    for entry in history or []:
        for added in entry.get("messagesAdded") or []:
            message = added.get("message") or {}
            messages.append(HistoryMessage(
                id=message.get("id") or "",
                thread_id=message.get("threadId") or ""
            ))
    return messages


def _upstream_error(action: str, error: Exception) -> UpstreamError:
    status = None
    if isinstance(error, HttpError):
        status = error.resp.status
    return UpstreamError(f"{action}: {error}", status=status)


class GmailClient:
    """
    History, message and watch calls against the Gmail API.

    Args:
        service_factory: Builds a Gmail resource from an access token
    """

    def __init__(self, service_factory: Callable[[str], object] = build_gmail_service):
        self.service_factory = service_factory

    def fetch_history(
        self,
        access_token: str,
        start_history_id: str,
        target_history_id: str
    ) -> HistoryDelta:
        """
        Fetch messages added since start_history_id.

        All result pages are read. The returned delta carries
        target_history_id (the id announced by the push notification)
        rather than whatever Gmail reports as its latest historyId.

        Raises:
            UpstreamError: on any Gmail transport or auth failure
        """
        messages: List[HistoryMessage] = []
        try:
            service = self.service_factory(access_token)
            page_token = None
            while True:
                kwargs = {
                    "userId": "me",
                    "startHistoryId": start_history_id,
                    "historyTypes": ["messageAdded"],
                }
                if page_token:
                    kwargs["pageToken"] = page_token

                response = service.users().history().list(**kwargs).execute()
                messages.extend(flatten_history(response.get("history", [])))

                page_token = response.get("nextPageToken")
                if not page_token:
                    break
        except GOOGLE_ERRORS as e:
            logger.error(
                "Error fetching Gmail history",
                exc_info=True,
                extra={"extra_fields": {
                    "start_history_id": start_history_id,
                    "history_id": target_history_id
                }}
            )
            raise _upstream_error("Gmail history.list failed", e) from e

        logger.info(
            "Retrieved Gmail history",
            extra={"extra_fields": {
                "start_history_id": start_history_id,
                "history_id": target_history_id,
                "message_count": len(messages)
            }}
        )
        return HistoryDelta(history_id=str(target_history_id), messages=messages)

    def fetch_message_detail(self, access_token: str, message_id: str) -> MessageDetail:
        """
        Fetch one full message by id.

        Raises:
            UpstreamError: on any Gmail transport or auth failure
        """
        try:
            service = self.service_factory(access_token)
            msg = service.users().messages().get(
                userId="me",
                id=message_id,
                format="full"
            ).execute()
        except GOOGLE_ERRORS as e:
            logger.error(
                "Error fetching message details",
                exc_info=True,
                extra={"extra_fields": {"message_id": message_id}}
            )
            raise _upstream_error("Gmail messages.get failed", e) from e

        return parse_message(msg)

    def register_watch(
        self,
        access_token: str,
        topic_name: str,
        label_ids: Sequence[str] = ("INBOX",)
    ) -> dict:
        """
        Register Gmail push notifications via Cloud Pub/Sub.

        Watch expires after ~7 days and must be renewed.

        Returns:
            Dictionary with 'historyId' (baseline) and 'expiration' (epoch ms)
        """
        request_body = {
            "topicName": topic_name,
            "labelIds": list(label_ids)
        }

        try:
            service = self.service_factory(access_token)
            response = service.users().watch(userId="me", body=request_body).execute()
        except GOOGLE_ERRORS as e:
            logger.error("Failed to register Gmail watch", exc_info=True)
            raise _upstream_error("Gmail users.watch failed", e) from e

        logger.info(
            "Successfully registered Gmail watch",
            extra={"extra_fields": {
                "history_id": response.get("historyId"),
                "expiration": response.get("expiration")
            }}
        )
        return response

    def stop_watch(self, access_token: str) -> None:
        """Cancel the active watch for the mailbox."""
        try:
            service = self.service_factory(access_token)
            service.users().stop(userId="me").execute()
        except GOOGLE_ERRORS as e:
            logger.error("Failed to stop Gmail watch", exc_info=True)
            raise _upstream_error("Gmail users.stop failed", e) from e


def get_gmail_client() -> GmailClient:
    """FastAPI dependency for the Gmail client."""
    return GmailClient()


def watch_expiration_to_datetime(expiration) -> Optional[datetime]:
    """Convert Gmail's epoch-milliseconds expiration to a UTC datetime."""
    if expiration is None:
        return None
    return datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)
