"""
User data endpoints.

The browser saves the PKCE code verifier before redirecting to Google and
the resulting OAuth tokens after the callback. Saving a token pair also
registers the Gmail push watch for the account.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailwatch.config import get_pubsub_topic_name
from mailwatch.database import get_db
from mailwatch.logger import get_logger
from mailwatch.services import credential_store
from mailwatch.services.auth import CallerIdentity, get_current_user
from mailwatch.services.gmail_service import (
    GmailClient,
    get_gmail_client,
    watch_expiration_to_datetime,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/user-data", tags=["User Data"])


class UserDataRequest(BaseModel):
    """Fields the browser may save; anything else is ignored."""
    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    code_verifier: Optional[str] = None
    token_expiry: Optional[datetime] = None


def _register_watch(db: Session, gmail: GmailClient, user: CallerIdentity, access_token: str) -> None:
    """Register the Gmail watch after a token save. Failures are only logged."""
    logger.info(
        "Processing token save operation",
        extra={"extra_fields": {"user_id": user.user_id, "email": user.email}}
    )
    try:
        watch = gmail.register_watch(access_token, get_pubsub_topic_name())
        if watch.get("historyId") and watch.get("expiration"):
            credential_store.record_watch(
                db,
                user.user_id,
                str(watch["historyId"]),
                watch_expiration_to_datetime(watch["expiration"])
            )
    except Exception:
        db.rollback()
        logger.error(
            "Failed to setup Gmail watch",
            exc_info=True,
            extra={"extra_fields": {"user_id": user.user_id, "email": user.email}}
        )


@router.post("")
def save_user_data(
    request: UserDataRequest,
    db: Session = Depends(get_db),
    gmail: GmailClient = Depends(get_gmail_client),
    user: CallerIdentity = Depends(get_current_user)
):
    """
    Save tokens or the PKCE code verifier for the caller.

    Only fields present in the body are written.
    """
    fields = request.model_dump(exclude_unset=True)
    is_token_save = isinstance(fields.get("access_token"), str) and isinstance(fields.get("refresh_token"), str)

    try:
        credential_store.update_user_data(db, user.user_id, fields)
    except SQLAlchemyError:
        db.rollback()
        logger.error(
            "Failed to update user data",
            exc_info=True,
            extra={"extra_fields": {"user_id": user.user_id}}
        )
        return JSONResponse(status_code=500, content={"message": "Failed to update data"})

    if is_token_save:
        _register_watch(db, gmail, user, fields["access_token"])

    return {"message": "Data updated successfully"}


def _read_user_data(db: Session, user: CallerIdentity, data_type: Optional[str]):
    credential = credential_store.get_credential(db, user.user_id)
    if credential is None:
        logger.debug("No data found for user", extra={"extra_fields": {"user_id": user.user_id}})
        return JSONResponse(status_code=404, content={"message": "No data found"})

    data = credential.to_dict()
    if not data_type:
        return data

    if data.get(data_type) is None:
        return JSONResponse(status_code=404, content={"message": f"{data_type} not found"})
    return {data_type: data[data_type]}


@router.get("")
def get_user_data(
    data_type: Optional[str] = Query(None, alias="type", description="Return only this field"),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_user)
):
    """Get the caller's stored record, or a single field of it."""
    return _read_user_data(db, user, data_type)


@router.get("/{data_type}")
def get_user_data_field(
    data_type: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_user)
):
    """Get a single field of the caller's stored record."""
    return _read_user_data(db, user, data_type)
