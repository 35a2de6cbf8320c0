"""Signature verification for identity-provider webhooks."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError
from svix.webhooks import Webhook, WebhookVerificationError

from .config import ConfigurationError

logger = logging.getLogger("blogapi.security")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Last millisecond of 9999-12-31 UTC, the latest instant a datetime can hold.
MAX_EVENT_TIMESTAMP_MS = 253_402_300_799_999


class WebhookVerificationFailed(ValueError):
    """Raised when a payload cannot be proven to come from the identity provider."""


class WebhookEvent(BaseModel):
    """Envelope of a verified identity-provider event."""

    type: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[int] = Field(
        default=None,
        ge=0,
        le=MAX_EVENT_TIMESTAMP_MS,
        description="Milliseconds since the epoch",
    )
    delivery_id: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @property
    def occurred_at(self) -> Optional[datetime]:
        """Best known time the provider emitted the event."""

        if self.timestamp is not None:
            return _EPOCH + timedelta(milliseconds=self.timestamp)
        return self.delivered_at


def _parse_delivery_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class WebhookVerifier:
    """Verify Svix-signed payloads using a pre-shared signing secret."""

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ConfigurationError("A webhook signing secret must be provided")
        try:
            self._webhook = Webhook(secret.strip())
        except ValueError as exc:
            raise ConfigurationError("The webhook signing secret is not valid base64") from exc

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Return the trusted event contained in ``payload`` or raise."""

        normalized = {key.lower(): value for key, value in headers.items()}
        try:
            self._webhook.verify(payload, normalized)
        except WebhookVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise WebhookVerificationFailed(str(exc)) from exc
        except ValueError as exc:
            logger.warning("Webhook payload could not be decoded: %s", exc)
            raise WebhookVerificationFailed("Payload is not valid JSON") from exc

        # The SDK only checks the signature; the envelope is parsed here.
        try:
            event = WebhookEvent.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Webhook payload is not a valid event envelope: %s", exc)
            raise WebhookVerificationFailed("Payload is not a valid event") from exc

        return event.model_copy(
            update={
                "delivery_id": normalized.get("svix-id"),
                "delivered_at": _parse_delivery_timestamp(normalized.get("svix-timestamp")),
            }
        )


__all__ = ["WebhookEvent", "WebhookVerificationFailed", "WebhookVerifier"]
