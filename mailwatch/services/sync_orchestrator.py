"""
Gmail push notification sync.

Pipeline per webhook call:
1. Decode the Pub/Sub envelope into (emailAddress, historyId)
2. Resolve the email to a Cognito user id
3. Load the stored credential record
4. Skip if the announced historyId is not newer than the stored one
5. Fetch messages added since the stored historyId
6. Fetch each new message in order
7. Advance the stored historyId

Unknown users, missing records and stale notifications are successful
no-ops: Pub/Sub redelivers anything that is not acknowledged with a 2xx,
and none of these would ever succeed on retry.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sqlalchemy.orm import Session

from mailwatch.errors import MalformedPayload
from mailwatch.logger import get_logger
from mailwatch.services import credential_store
from mailwatch.services.gmail_service import GmailClient, MessageDetail

logger = get_logger(__name__)


class SyncOutcome(str, Enum):
    """How a webhook invocation ended."""
    PROCESSED = "processed"
    SKIPPED_NO_USER = "skipped_no_user"
    SKIPPED_NO_DATA = "skipped_no_data"
    SKIPPED_STALE = "skipped_stale"
    FAILED = "failed"


@dataclass
class PushNotification:
    """Decoded Gmail notification carried inside a Pub/Sub push."""
    email_address: str
    history_id: str


@dataclass
class SyncResult:
    """Outcome of one webhook invocation, ready to become an HTTP response."""
    outcome: SyncOutcome
    message: str
    processed_messages: Optional[int] = None
    error: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 500 if self.outcome == SyncOutcome.FAILED else 200

    def to_response_body(self) -> dict:
        body = {"message": self.message}
        if self.processed_messages is not None:
            body["processedMessages"] = self.processed_messages
        if self.error is not None:
            body["error"] = self.error
        return body


def decode_push_envelope(raw_body: Union[bytes, str, None]) -> PushNotification:
    """
    Decode a Pub/Sub push body into a PushNotification.

    Expected shape:
        {"message": {"data": <base64 JSON {emailAddress, historyId}>,
                     "messageId": ..., "publishTime": ...},
         "subscription": ...}

    Raises:
        MalformedPayload: if any layer is missing or cannot be decoded
    """
    if not raw_body:
        raise MalformedPayload("No body in request")

    try:
        envelope = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"Request body is not valid JSON: {e}") from e

    message = envelope.get("message") if isinstance(envelope, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not data or not isinstance(data, str):
        raise MalformedPayload("Missing message.data in push envelope")

    try:
        decoded = base64.b64decode(data, validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"message.data is not base64-encoded JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedPayload("Decoded notification is not a JSON object")

    email_address = payload.get("emailAddress")
    history_id = payload.get("historyId")
    if not email_address or history_id in (None, ""):
        raise MalformedPayload("Missing required fields in decoded data")

    try:
        history_number = int(history_id)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"historyId is not numeric: {history_id!r}") from e
    if history_number < 0:
        raise MalformedPayload(f"historyId is negative: {history_id!r}")

    return PushNotification(email_address=str(email_address), history_id=str(history_number))


class SyncOrchestrator:
    """
    Runs one Gmail history sync per push notification.

    Each call is independent; the only state shared between calls is the
    history_id stored in the credential record.

    Args:
        db: Database session for the credential store
        resolver: Object with resolve(email) -> user id or None
        gmail: Gmail client used for history and message fetches
    """

    def __init__(self, db: Session, resolver, gmail: GmailClient):
        self.db = db
        self.resolver = resolver
        self.gmail = gmail

    def handle(self, raw_body: Union[bytes, str, None]) -> SyncResult:
        """Process one push body. Never raises; failures become FAILED results."""
        try:
            return self._sync(raw_body)
        except Exception as e:
            logger.error("Error processing webhook", exc_info=True)
            return SyncResult(
                outcome=SyncOutcome.FAILED,
                message="Error processing webhook",
                error=str(e)
            )

    def _sync(self, raw_body) -> SyncResult:
        notification = decode_push_envelope(raw_body)
        email_address = notification.email_address
        new_history_id = notification.history_id

        logger.info(
            "Gmail notification received",
            extra={"extra_fields": {"email": email_address, "history_id": new_history_id}}
        )

        user_id = self.resolver.resolve(email_address)
        if not user_id:
            logger.info(
                "No user found for email, skipping processing",
                extra={"extra_fields": {"email": email_address, "history_id": new_history_id}}
            )
            return SyncResult(SyncOutcome.SKIPPED_NO_USER, "No user found for email")

        credential = credential_store.get_credential(self.db, user_id)
        if credential is None or not credential.history_id:
            logger.info(
                "No user data found, skipping processing",
                extra={"extra_fields": {
                    "user_id": user_id,
                    "email": email_address,
                    "history_id": new_history_id
                }}
            )
            return SyncResult(SyncOutcome.SKIPPED_NO_DATA, "No user data found")

        stored_history_id = credential.history_id
        if int(new_history_id) <= int(stored_history_id):
            logger.info(
                "Skipping processing - new history ID is not greater than stored one",
                extra={"extra_fields": {
                    "user_id": user_id,
                    "stored_history_id": stored_history_id,
                    "history_id": new_history_id
                }}
            )
            return SyncResult(SyncOutcome.SKIPPED_STALE, "No new changes to process")

        delta = self.gmail.fetch_history(credential.access_token, stored_history_id, new_history_id)

        for message in delta.messages:
            detail = self.gmail.fetch_message_detail(credential.access_token, message.id)
            self.process_message(user_id, detail)

        credential_store.advance_history_id(self.db, credential, delta.history_id)

        return SyncResult(
            outcome=SyncOutcome.PROCESSED,
            message="Successfully processed changes",
            processed_messages=len(delta.messages)
        )

    def process_message(self, user_id: str, detail: MessageDetail) -> None:
        """Handle one newly-arrived message. Only logged for now."""
        logger.info(
            "Processing new message",
            extra={"extra_fields": {
                "user_id": user_id,
                "message_id": detail.id,
                "thread_id": detail.thread_id,
                "subject": detail.subject,
                "snippet": detail.snippet
            }}
        )
