"""
Shared fixtures: in-memory database, fake Cognito and Gmail clients, and a
TestClient wired to them through dependency overrides.
"""

import base64
import json
import os
import time
from datetime import datetime

# Must be set before mailwatch.database builds its engine
os.environ["DATABASE_URL"] = "sqlite://"

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from mailwatch.database import Base, get_db
from mailwatch.errors import UpstreamError
from mailwatch.services import credential_store
from mailwatch.services.gmail_service import (
    HistoryDelta,
    HistoryMessage,
    MessageDetail,
    get_gmail_client,
)
from mailwatch.services.identity_resolver import get_identity_resolver

USER_POOL_ID = "us-east-1_TestPool"
ISSUER = f"https://cognito-idp.us-east-1.amazonaws.com/{USER_POOL_ID}"
SIGNING_KEY = "test-signing-key-that-is-long-enough-for-hs256"

USER_ID = "0f1e2d3c-user-1"
USER_EMAIL = "alice@example.com"


class FakeResolver:
    """Maps emails to user ids; optionally raises on every lookup."""

    def __init__(self, users=None, error=None):
        self.users = users or {}
        self.error = error
        self.calls = []

    def resolve(self, email):
        self.calls.append(email)
        if self.error:
            raise self.error
        return self.users.get(email)


class FakeGmail:
    """Records every call; returns canned history, details and watch data."""

    def __init__(self):
        self.messages = []
        self.history_error = None
        self.history_delay = 0
        self.failing_message_ids = set()
        self.watch_response = {"historyId": "500", "expiration": "1893456000000"}
        self.watch_error = None

        self.history_calls = []
        self.detail_calls = []
        self.watch_calls = []
        self.stop_calls = []

    def fetch_history(self, access_token, start_history_id, target_history_id):
        self.history_calls.append((access_token, start_history_id, target_history_id))
        if self.history_delay:
            time.sleep(self.history_delay)
        if self.history_error:
            raise self.history_error
        return HistoryDelta(
            history_id=str(target_history_id),
            messages=[HistoryMessage(id=m[0], thread_id=m[1]) for m in self.messages]
        )

    def fetch_message_detail(self, access_token, message_id):
        self.detail_calls.append(message_id)
        if message_id in self.failing_message_ids:
            raise UpstreamError(f"message {message_id} not found", status=404)
        return MessageDetail(id=message_id, thread_id="t-" + message_id, subject="Hello")

    def register_watch(self, access_token, topic_name, label_ids=("INBOX",)):
        self.watch_calls.append((access_token, topic_name))
        if self.watch_error:
            raise self.watch_error
        return self.watch_response

    def stop_watch(self, access_token):
        self.stop_calls.append(access_token)


@pytest.fixture(autouse=True)
def environment(monkeypatch):
    monkeypatch.setenv("COGNITO_USER_POOL_ID", USER_POOL_ID)
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("GCP_PROJECT_ID", "test-project")
    monkeypatch.setenv("GMAIL_PUBSUB_TOPIC", "gmail-events")


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def resolver():
    return FakeResolver(users={USER_EMAIL: USER_ID})


@pytest.fixture
def gmail():
    return FakeGmail()


@pytest.fixture
def client(session_factory, resolver, gmail):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_resolver] = lambda: resolver
    app.dependency_overrides[get_gmail_client] = lambda: gmail
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stored_credential(db):
    """A connected user whose watermark is at historyId 100."""
    return credential_store.save_credential(
        db,
        user_id=USER_ID,
        access_token="ya29.access",
        refresh_token="1//refresh",
        id_token="id.token.value",
        code_verifier="pkce-verifier",
        token_expiry=datetime(2030, 1, 1, 12, 0, 0),
        history_id="100",
        watch_expiration=datetime(2030, 1, 8, 12, 0, 0)
    )


@pytest.fixture
def push_body():
    """Build a Pub/Sub push envelope for a Gmail notification."""
    def build(email_address=USER_EMAIL, history_id=150):
        data = json.dumps({"emailAddress": email_address, "historyId": history_id})
        return {
            "message": {
                "data": base64.b64encode(data.encode("utf-8")).decode("ascii"),
                "messageId": "2070443601311540",
                "publishTime": "2024-05-01T10:00:00.000Z"
            },
            "subscription": "projects/test-project/subscriptions/gmail-events-push"
        }
    return build


@pytest.fixture
def auth_headers():
    """Headers carrying Cognito-shaped ID and access tokens for USER_ID."""
    def build(sub=USER_ID, email=USER_EMAIL, issuer=ISSUER, expires_in=3600):
        exp = int(time.time()) + expires_in
        id_token = jwt.encode(
            {"sub": sub, "email": email, "iss": issuer, "exp": exp},
            SIGNING_KEY,
            algorithm="HS256"
        )
        access_token = jwt.encode(
            {"sub": sub, "iss": issuer, "exp": exp, "token_use": "access"},
            SIGNING_KEY,
            algorithm="HS256"
        )
        return {"Authorization": f"Bearer {access_token}", "X-Id-Token": id_token}
    return build
