"""
Credential store - CRUD over UserCredential.

- get_credential: point lookup by user id
- save_credential: full overwrite of a record
- advance_history_id: conditional overwrite used by the webhook
- update_user_data: partial upsert used by the token save path
- record_watch: store the baseline returned by Gmail users.watch
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, cast, or_, update
from sqlalchemy.orm import Session

from mailwatch.logger import get_logger
from mailwatch.models.user_credential import UserCredential

logger = get_logger(__name__)

# Columns the browser is allowed to write through the user-data API
USER_DATA_FIELDS = (
    "access_token",
    "refresh_token",
    "id_token",
    "code_verifier",
    "token_expiry",
)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Columns are naive and hold UTC; convert aware values, keep naive ones."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _now() -> datetime:
    return _to_naive_utc(datetime.now(timezone.utc))


def get_credential(db: Session, user_id: str) -> Optional[UserCredential]:
    """Get the stored credential record for a user, or None."""
    return db.get(UserCredential, user_id)


def save_credential(
    db: Session,
    user_id: str,
    access_token: str,
    refresh_token: str,
    id_token: str,
    code_verifier: str,
    token_expiry: Optional[datetime],
    history_id: Optional[str],
    watch_expiration: Optional[datetime]
) -> UserCredential:
    """
    Overwrite the whole record for a user (insert if missing).

    Every field is required so that a caller cannot silently drop one.
    """
    credential = db.merge(UserCredential(
        user_id=user_id,
        access_token=access_token,
        refresh_token=refresh_token,
        id_token=id_token,
        code_verifier=code_verifier,
        token_expiry=_to_naive_utc(token_expiry),
        history_id=history_id,
        watch_expiration=_to_naive_utc(watch_expiration),
        updated_at=_now()
    ))
    db.commit()
    db.refresh(credential)
    return credential


def advance_history_id(db: Session, credential: UserCredential, new_history_id: str) -> bool:
    """
    Move the sync watermark forward to new_history_id.

    The row is rewritten with every other field carried over from
    `credential`, but only if the stored history_id is still missing or
    numerically smaller. Two webhook invocations racing on the same user
    therefore can never move the watermark backwards.

    Args:
        db: Database session
        credential: Record as read at the start of the sync
        new_history_id: historyId announced by the push notification

    Returns:
        True if the row was written, False if a newer watermark was already stored
    """
    user_id = credential.user_id
    stmt = (
        update(UserCredential)
        .where(UserCredential.user_id == user_id)
        .where(or_(
            UserCredential.history_id.is_(None),
            cast(UserCredential.history_id, BigInteger) < int(new_history_id)
        ))
        .values(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            id_token=credential.id_token,
            code_verifier=credential.code_verifier,
            token_expiry=credential.token_expiry,
            watch_expiration=credential.watch_expiration,
            history_id=str(new_history_id),
            updated_at=_now()
        )
        .execution_options(synchronize_session=False)
    )

    try:
        result = db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        logger.error(
            "Error updating user data",
            exc_info=True,
            extra={"extra_fields": {"user_id": user_id, "history_id": new_history_id}}
        )
        raise

    advanced = result.rowcount == 1
    if advanced:
        logger.info(
            "Successfully updated user data",
            extra={"extra_fields": {"user_id": user_id, "history_id": new_history_id}}
        )
    else:
        logger.warning(
            "Stored history ID already at or past target, write skipped",
            extra={"extra_fields": {"user_id": user_id, "history_id": new_history_id}}
        )
    return advanced


def update_user_data(db: Session, user_id: str, fields: dict) -> UserCredential:
    """
    Patch the given fields on a user's record, creating it if needed.

    Unknown keys are ignored; only USER_DATA_FIELDS can be written here.
    """
    logger.info(
        "Updating user data",
        extra={"extra_fields": {"user_id": user_id, "update_fields": sorted(fields)}}
    )

    credential = get_credential(db, user_id)
    if credential is None:
        credential = UserCredential(user_id=user_id)
        db.add(credential)

    for name in USER_DATA_FIELDS:
        if name in fields:
            value = fields[name]
            if isinstance(value, datetime):
                value = _to_naive_utc(value)
            setattr(credential, name, value)
    credential.updated_at = _now()

    db.commit()
    db.refresh(credential)
    return credential


def record_watch(
    db: Session,
    user_id: str,
    history_id: Optional[str],
    expiration: Optional[datetime]
) -> UserCredential:
    """
    Save a Gmail watch registration for a user.

    The watch's historyId becomes the sync baseline unless a newer
    watermark is already stored.
    """
    logger.info(
        "Saving Gmail watch data",
        extra={"extra_fields": {"user_id": user_id, "history_id": history_id}}
    )

    credential = get_credential(db, user_id)
    if credential is None:
        credential = UserCredential(user_id=user_id)
        db.add(credential)

    if history_id is not None and (
        credential.history_id is None or int(credential.history_id) < int(history_id)
    ):
        credential.history_id = str(history_id)
    credential.watch_expiration = _to_naive_utc(expiration)
    credential.updated_at = _now()

    db.commit()
    db.refresh(credential)
    return credential
