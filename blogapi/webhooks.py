"""Dispatch verified identity-provider events onto the local user records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import anyio
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .database import Database
from .security import WebhookEvent

logger = logging.getLogger("blogapi.webhooks")

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"


class EventPayloadError(ValueError):
    """Raised when a verified event lacks the fields a handler needs."""


class EmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email_address: str


class UserEventData(BaseModel):
    """Subset of the provider's user object relied upon by the handlers."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    username: Optional[str] = None
    email_addresses: List[EmailAddress] = Field(default_factory=list)
    profile_img_url: Optional[str] = None
    profile_image_url: Optional[str] = None
    image_url: Optional[str] = None

    def primary_email(self) -> Optional[str]:
        for entry in self.email_addresses:
            address = entry.email_address.strip()
            if address:
                return address
        return None

    def resolved_username(self) -> Optional[str]:
        if self.username and self.username.strip():
            return self.username.strip()
        return self.primary_email()

    def resolved_image_url(self) -> Optional[str]:
        for candidate in (self.profile_img_url, self.profile_image_url, self.image_url):
            if candidate:
                return candidate
        return None


class DeletedUserData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)


@dataclass(frozen=True)
class DispatchOutcome:
    """What the dispatcher did with a single event."""

    event_type: str
    action: str
    external_id: Optional[str] = None
    details: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"event": self.event_type, "action": self.action}
        if self.external_id is not None:
            payload["external_id"] = self.external_id
        payload.update(self.details)
        return payload


Handler = Callable[[WebhookEvent], Awaitable[DispatchOutcome]]


def _parse(model: type[BaseModel], event: WebhookEvent):
    try:
        return model.model_validate(event.data)
    except ValidationError as exc:
        raise EventPayloadError(f"Invalid {event.type} payload: {exc.errors()[0]['msg']}") from exc


class UserLifecycleSync:
    """Keep local users in step with the identity provider's account events."""

    def __init__(self, database: Database) -> None:
        self._database = database
        self._handlers: Dict[str, Handler] = {
            USER_CREATED: self.handle_user_upsert,
            USER_UPDATED: self.handle_user_upsert,
            USER_DELETED: self.handle_user_deleted,
        }

    async def dispatch(self, event: WebhookEvent) -> DispatchOutcome:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Ignoring unhandled webhook event type %s", event.type)
            return DispatchOutcome(event_type=event.type, action="ignored")
        return await handler(event)

    async def handle_user_upsert(self, event: WebhookEvent) -> DispatchOutcome:
        data: UserEventData = _parse(UserEventData, event)
        username = data.resolved_username()
        if username is None:
            raise EventPayloadError(
                f"User {data.id} has neither a username nor an email address"
            )

        logger.info("Synchronising user %s from %s event", data.id, event.type)

        def _store():
            return self._database.upsert_user(
                data.id,
                username=username,
                email=data.primary_email(),
                image_url=data.resolved_image_url(),
                event_at=event.occurred_at,
            )

        result = await anyio.to_thread.run_sync(_store)

        if not result.applied:
            logger.warning(
                "Skipped stale %s event for user %s (delivery %s)",
                event.type,
                data.id,
                event.delivery_id,
            )
            return DispatchOutcome(event_type=event.type, action="stale", external_id=data.id)

        action = "created" if result.created else "updated"
        logger.info("User %s %s as local user %s", data.id, action, result.user.id)
        return DispatchOutcome(event_type=event.type, action=action, external_id=data.id)

    async def handle_user_deleted(self, event: WebhookEvent) -> DispatchOutcome:
        data: DeletedUserData = _parse(DeletedUserData, event)
        logger.info("Deleting user %s", data.id)

        def _delete():
            return self._database.delete_user_cascade(data.id, event_at=event.occurred_at)

        summary = await anyio.to_thread.run_sync(_delete)

        if not summary.deleted:
            logger.info("User %s was already absent; nothing to delete", data.id)
            return DispatchOutcome(event_type=event.type, action="absent", external_id=data.id)

        logger.info(
            "User %s and related data deleted (%d posts, %d comments)",
            data.id,
            summary.posts_deleted,
            summary.comments_deleted,
        )
        return DispatchOutcome(
            event_type=event.type,
            action="deleted",
            external_id=data.id,
            details={
                "posts_deleted": summary.posts_deleted,
                "comments_deleted": summary.comments_deleted,
            },
        )


__all__ = [
    "DispatchOutcome",
    "EventPayloadError",
    "USER_CREATED",
    "USER_DELETED",
    "USER_UPDATED",
    "UserEventData",
    "UserLifecycleSync",
]
