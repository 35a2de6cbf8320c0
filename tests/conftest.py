from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import pytest
from fastapi.testclient import TestClient
from svix.webhooks import Webhook

from blogapi.config import Settings
from blogapi.database import Database
from blogapi.service import WEBHOOK_PATH, create_app

SIGNING_SECRET = "whsec_" + base64.b64encode(b"blog-tests-signing-secret-0001").decode("ascii")


def signed_headers(body: str, *, secret: str = SIGNING_SECRET, msg_id: str = "msg_test") -> Dict[str, str]:
    sent_at = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, sent_at, body)
    return {
        "content-type": "application/json",
        "svix-id": msg_id,
        "svix-timestamp": str(int(sent_at.timestamp())),
        "svix-signature": signature,
    }


def event_body(event_type: str, data: Dict[str, Any], *, timestamp_ms: Optional[int] = None) -> str:
    envelope: Dict[str, Any] = {"type": event_type, "object": "event", "data": data}
    if timestamp_ms is not None:
        envelope["timestamp"] = timestamp_ms
    return json.dumps(envelope)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(database_path=tmp_path / "blog.sqlite3", webhook_secret=SIGNING_SECRET)


@pytest.fixture()
def database(settings: Settings) -> Database:
    db = Database(settings.database_path)
    db.initialize()
    return db


@pytest.fixture()
def client(settings: Settings, database: Database) -> Iterator[TestClient]:
    app = create_app(settings=settings, database=database)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def deliver(client: TestClient) -> Callable[..., Any]:
    """Post a correctly signed identity-provider event to the webhook endpoint."""

    def _deliver(
        event_type: str,
        data: Dict[str, Any],
        *,
        timestamp_ms: Optional[int] = None,
        msg_id: str = "msg_test",
    ):
        body = event_body(event_type, data, timestamp_ms=timestamp_ms)
        return client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body, msg_id=msg_id))

    return _deliver


@pytest.fixture()
def sign() -> Callable[..., Dict[str, str]]:
    return signed_headers


@pytest.fixture()
def make_body() -> Callable[..., str]:
    return event_body


@pytest.fixture()
def signing_secret() -> str:
    return SIGNING_SECRET
