from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from mailwatch.models.user_credential import UserCredential
from mailwatch.services import credential_store


def test_get_credential_returns_none_for_unknown_user(db):
    assert credential_store.get_credential(db, "missing") is None


def test_advance_rewrites_record_with_new_history(db, stored_credential):
    assert credential_store.advance_history_id(db, stored_credential, "150") is True

    db.expire_all()
    record = credential_store.get_credential(db, stored_credential.user_id)
    assert record.history_id == "150"
    assert record.access_token == "ya29.access"
    assert record.code_verifier == "pkce-verifier"
    assert record.watch_expiration == datetime(2030, 1, 8, 12, 0, 0)


def test_advance_never_moves_watermark_backwards(db, stored_credential):
    # Another invocation advanced the watermark after this one read the record
    db.execute(
        update(UserCredential)
        .where(UserCredential.user_id == stored_credential.user_id)
        .values(history_id="200")
    )
    db.commit()

    assert credential_store.advance_history_id(db, stored_credential, "150") is False

    db.expire_all()
    assert credential_store.get_credential(db, stored_credential.user_id).history_id == "200"


def test_advance_compares_numerically(db, stored_credential):
    # "1000" < "150" as strings
    assert credential_store.advance_history_id(db, stored_credential, "1000") is True
    assert credential_store.advance_history_id(db, stored_credential, "150") is False


def test_advance_fills_missing_watermark(db, stored_credential):
    stored_credential.history_id = None
    db.commit()

    assert credential_store.advance_history_id(db, stored_credential, "7") is True


def test_update_user_data_creates_and_patches(db):
    credential_store.update_user_data(db, "user-2", {"code_verifier": "v1"})
    record = credential_store.update_user_data(
        db,
        "user-2",
        {"access_token": "a", "refresh_token": "r", "history_id": "999", "unknown": "x"}
    )

    assert record.code_verifier == "v1"
    assert record.access_token == "a"
    assert record.refresh_token == "r"
    # history_id is owned by the sync path, not the browser
    assert record.history_id is None


def test_record_watch_keeps_newer_watermark(db, stored_credential):
    expiration = datetime(2031, 1, 1)

    record = credential_store.record_watch(db, stored_credential.user_id, "50", expiration)
    assert record.history_id == "100"
    assert record.watch_expiration == expiration

    record = credential_store.record_watch(db, stored_credential.user_id, "300", expiration)
    assert record.history_id == "300"


def test_record_watch_creates_record(db):
    record = credential_store.record_watch(db, "user-3", "42", None)

    assert record.history_id == "42"
    assert record.watch_expiration is None


def test_aware_datetimes_are_stored_as_naive_utc(db):
    offset = timezone(timedelta(hours=-5))

    record = credential_store.update_user_data(
        db, "user-4", {"token_expiry": datetime(2030, 1, 1, 7, 0, tzinfo=offset)}
    )
    assert record.token_expiry == datetime(2030, 1, 1, 12, 0)

    record = credential_store.record_watch(
        db, "user-4", "10", datetime(2030, 1, 8, 0, 0, tzinfo=timezone.utc)
    )
    assert record.watch_expiration == datetime(2030, 1, 8, 0, 0)
