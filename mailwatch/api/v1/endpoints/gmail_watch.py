"""
Gmail Watch Management

Endpoints to register and cancel the Gmail push notification watch for the
signed-in user.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mailwatch.config import get_pubsub_topic_name
from mailwatch.database import get_db
from mailwatch.errors import ConfigurationError, UpstreamError
from mailwatch.services import credential_store
from mailwatch.services.auth import CallerIdentity, get_current_user
from mailwatch.services.gmail_service import (
    GmailClient,
    get_gmail_client,
    watch_expiration_to_datetime,
)

router = APIRouter(prefix="/gmail", tags=["Gmail Watch"])


def _stored_access_token(db: Session, user: CallerIdentity) -> str:
    credential = credential_store.get_credential(db, user.user_id)
    if credential is None or not credential.access_token:
        raise HTTPException(
            status_code=404,
            detail="No Gmail access token stored. Connect Gmail first."
        )
    return credential.access_token


@router.post("/watch/start")
def start_gmail_watch(
    db: Session = Depends(get_db),
    gmail: GmailClient = Depends(get_gmail_client),
    user: CallerIdentity = Depends(get_current_user)
):
    """
    Register Gmail push notifications (watch) for the caller's mailbox.

    Prerequisites:
    1. Pub/Sub topic created (GMAIL_PUBSUB_TOPIC)
    2. Gmail publisher permission granted
    3. Push subscription created with the /gmail/events webhook URL
    4. GCP_PROJECT_ID set in .env

    Returns:
        dict: Watch registration details including baseline historyId and expiration

    Important:
    - Watch expires in ~7 days and must be renewed
    - The returned historyId becomes the sync baseline
    """
    try:
        topic_name = get_pubsub_topic_name()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    access_token = _stored_access_token(db, user)

    try:
        response = gmail.register_watch(access_token, topic_name)
    except UpstreamError as e:
        raise HTTPException(
            status_code=502,
            detail=f"Failed to register Gmail watch: {str(e)}"
        )

    history_id = response.get("historyId")
    expiration = response.get("expiration")
    expiration_date = watch_expiration_to_datetime(expiration)

    credential_store.record_watch(
        db,
        user.user_id,
        str(history_id) if history_id is not None else None,
        expiration_date
    )

    return {
        "status": "success",
        "message": "Gmail watch registered successfully",
        "historyId": history_id,
        "expiration": expiration,
        "expiration_date": expiration_date.isoformat() if expiration_date else None
    }


@router.post("/watch/stop")
def stop_gmail_watch(
    db: Session = Depends(get_db),
    gmail: GmailClient = Depends(get_gmail_client),
    user: CallerIdentity = Depends(get_current_user)
):
    """
    Stop Gmail push notifications for the caller's mailbox.

    Returns:
        dict: Confirmation of watch cancellation
    """
    access_token = _stored_access_token(db, user)

    try:
        gmail.stop_watch(access_token)
    except UpstreamError as e:
        raise HTTPException(
            status_code=502,
            detail=f"Failed to stop Gmail watch: {str(e)}"
        )

    return {
        "status": "success",
        "message": "Gmail watch stopped successfully"
    }
