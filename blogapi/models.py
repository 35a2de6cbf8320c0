"""Domain models persisted by the blog backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Local mirror of an identity-provider account."""

    id: int
    external_id: str
    username: str
    email: Optional[str]
    image_url: Optional[str]
    created_at: datetime
    updated_at: datetime
    last_event_at: Optional[datetime] = None


@dataclass(frozen=True)
class Post:
    id: int
    user_id: int
    slug: str
    title: str
    description: Optional[str]
    content: str
    category: str
    image_url: Optional[str]
    visit_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Comment:
    id: int
    user_id: int
    post_id: int
    content: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of mirroring a remote account into the users table."""

    user: Optional[User]
    created: bool
    applied: bool


@dataclass(frozen=True)
class DeletionSummary:
    """Counts of rows removed while tearing down a user."""

    user: Optional[User]
    posts_deleted: int = 0
    comments_deleted: int = 0

    @property
    def deleted(self) -> bool:
        return self.user is not None


@dataclass(frozen=True)
class OrphanReport:
    """Posts and comments that reference rows which no longer exist."""

    post_ids: tuple[int, ...]
    comment_ids: tuple[int, ...]

    @property
    def empty(self) -> bool:
        return not self.post_ids and not self.comment_ids


__all__ = ["Comment", "DeletionSummary", "OrphanReport", "Post", "UpsertResult", "User"]
