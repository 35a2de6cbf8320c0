from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from svix.webhooks import Webhook

from blogapi.config import ConfigurationError
from blogapi.security import WebhookVerificationFailed, WebhookVerifier


def _headers(secret: str, body: str, *, sent_at: datetime, msg_id: str = "msg_1") -> dict[str, str]:
    return {
        "Svix-Id": msg_id,
        "Svix-Timestamp": str(int(sent_at.timestamp())),
        "Svix-Signature": Webhook(secret).sign(msg_id, sent_at, body),
    }


def test_verify_returns_typed_event(signing_secret: str, sign, make_body) -> None:
    body = make_body("user.created", {"id": "user_1"}, timestamp_ms=1_714_564_800_000)
    event = WebhookVerifier(signing_secret).verify(body.encode("utf-8"), sign(body, msg_id="msg_42"))

    assert event.type == "user.created"
    assert event.data == {"id": "user_1"}
    assert event.delivery_id == "msg_42"
    assert event.occurred_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_occurred_at_falls_back_to_delivery_time(signing_secret: str, sign, make_body) -> None:
    body = make_body("user.deleted", {"id": "user_1"})
    event = WebhookVerifier(signing_secret).verify(body.encode("utf-8"), sign(body))

    assert event.occurred_at is not None
    assert event.occurred_at == event.delivered_at


def test_header_names_are_case_insensitive(signing_secret: str) -> None:
    body = json.dumps({"type": "user.created", "data": {"id": "user_2"}})
    headers = _headers(signing_secret, body, sent_at=datetime.now(timezone.utc))

    event = WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)

    assert event.data["id"] == "user_2"


def test_expired_timestamp_is_rejected(signing_secret: str) -> None:
    body = json.dumps({"type": "user.created", "data": {"id": "user_3"}})
    headers = _headers(signing_secret, body, sent_at=datetime.now(timezone.utc) - timedelta(hours=1))

    with pytest.raises(WebhookVerificationFailed):
        WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)


def test_signature_from_another_secret_is_rejected(signing_secret: str) -> None:
    other_secret = "whsec_b3RoZXItc2lnbmluZy1zZWNyZXQtdmFsdWU="
    body = json.dumps({"type": "user.created", "data": {"id": "user_4"}})
    headers = _headers(other_secret, body, sent_at=datetime.now(timezone.utc))

    with pytest.raises(WebhookVerificationFailed):
        WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)


def test_envelope_without_type_is_rejected(signing_secret: str) -> None:
    body = json.dumps({"data": {"id": "user_5"}})
    headers = _headers(signing_secret, body, sent_at=datetime.now(timezone.utc))

    with pytest.raises(WebhookVerificationFailed):
        WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)


@pytest.mark.parametrize("secret", ["", "   "])
def test_blank_secret_is_a_configuration_error(secret: str) -> None:
    with pytest.raises(ConfigurationError):
        WebhookVerifier(secret)


def test_signed_envelope_fields_are_parsed_from_the_body(signing_secret: str) -> None:
    body = json.dumps(
        {
            "type": "user.updated",
            "object": "event",
            "timestamp": 1_714_564_800_123,
            "data": {"id": "user_6", "username": "six"},
        }
    )
    headers = _headers(signing_secret, body, sent_at=datetime.now(timezone.utc), msg_id="msg_6")

    event = WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)

    assert event.type == "user.updated"
    assert event.data == {"id": "user_6", "username": "six"}
    assert event.timestamp == 1_714_564_800_123
    assert event.delivery_id == "msg_6"
    assert event.occurred_at == datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)


@pytest.mark.parametrize("timestamp", [-1, 10**20])
def test_out_of_range_event_timestamp_is_rejected(signing_secret: str, timestamp: int) -> None:
    body = json.dumps({"type": "user.created", "timestamp": timestamp, "data": {"id": "user_7"}})
    headers = _headers(signing_secret, body, sent_at=datetime.now(timezone.utc))

    with pytest.raises(WebhookVerificationFailed):
        WebhookVerifier(signing_secret).verify(body.encode("utf-8"), headers)
