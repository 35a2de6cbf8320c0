"""SQLite-backed persistence for users, posts and comments."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .models import Comment, DeletionSummary, OrphanReport, Post, UpsertResult, User


class StorageError(RuntimeError):
    """Raised when the database fails or rejects a write."""


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    # Fixed width so that stored values also order correctly as text.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """Simple wrapper around SQLite for persisting blog content."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection holding a write lock for the whole block."""

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL UNIQUE,
                    username TEXT NOT NULL,
                    email TEXT,
                    image_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_event_at TEXT
                );

                CREATE TABLE IF NOT EXISTS user_tombstones (
                    external_id TEXT PRIMARY KEY,
                    deleted_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS posts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    description TEXT,
                    content TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'general',
                    image_url TEXT,
                    visit_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS comments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    post_id INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # User lifecycle
    # ------------------------------------------------------------------
    def upsert_user(
        self,
        external_id: str,
        *,
        username: str,
        email: Optional[str],
        image_url: Optional[str],
        event_at: Optional[datetime] = None,
    ) -> UpsertResult:
        """Insert or update the user mirroring ``external_id``.

        Events that are not newer than a recorded deletion, or older than the
        last event applied to the user, are ignored and reported with
        ``applied=False``.
        """

        now = _current_timestamp()
        serialized_now = _serialize_datetime(now)
        serialized_event = _serialize_datetime(event_at) if event_at is not None else None

        try:
            with self._transaction() as conn:
                tombstone = conn.execute(
                    "SELECT deleted_at FROM user_tombstones WHERE external_id = ?",
                    (external_id,),
                ).fetchone()
                if tombstone is not None:
                    deleted_at = _parse_datetime(str(tombstone["deleted_at"]))
                    if event_at is None or event_at <= deleted_at:
                        return UpsertResult(user=None, created=False, applied=False)
                    conn.execute(
                        "DELETE FROM user_tombstones WHERE external_id = ?",
                        (external_id,),
                    )

                row = conn.execute(
                    "SELECT * FROM users WHERE external_id = ?",
                    (external_id,),
                ).fetchone()

                if row is not None:
                    existing = self._row_to_user(row)
                    if (
                        event_at is not None
                        and existing.last_event_at is not None
                        and event_at < existing.last_event_at
                    ):
                        return UpsertResult(user=existing, created=False, applied=False)

                    conn.execute(
                        """
                        UPDATE users
                        SET username = ?, email = ?, image_url = ?, updated_at = ?,
                            last_event_at = COALESCE(?, last_event_at)
                        WHERE id = ?
                        """,
                        (username, email, image_url, serialized_now, serialized_event, existing.id),
                    )
                    user_id = existing.id
                    created = False
                else:
                    cursor = conn.execute(
                        """
                        INSERT INTO users (
                            external_id, username, email, image_url,
                            created_at, updated_at, last_event_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            external_id,
                            username,
                            email,
                            image_url,
                            serialized_now,
                            serialized_now,
                            serialized_event,
                        ),
                    )
                    user_id = int(cursor.lastrowid)
                    created = True

                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.DatabaseError as exc:
            raise StorageError(f"Failed to store user {external_id}: {exc}") from exc

        return UpsertResult(user=self._row_to_user(row), created=created, applied=True)

    def delete_user_cascade(
        self,
        external_id: str,
        *,
        event_at: Optional[datetime] = None,
    ) -> DeletionSummary:
        """Remove a user together with their posts and comments.

        The tombstone, the user row and every dependent row are written in a
        single transaction, so a failure leaves the previous state intact.
        """

        deleted_at = _serialize_datetime(event_at or _current_timestamp())

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO user_tombstones (external_id, deleted_at) VALUES (?, ?)
                    ON CONFLICT(external_id) DO UPDATE
                    SET deleted_at = MAX(deleted_at, excluded.deleted_at)
                    """,
                    (external_id, deleted_at),
                )

                row = conn.execute(
                    "SELECT * FROM users WHERE external_id = ?",
                    (external_id,),
                ).fetchone()
                if row is None:
                    return DeletionSummary(user=None)

                user = self._row_to_user(row)
                conn.execute("DELETE FROM users WHERE id = ?", (user.id,))

                post_ids = [
                    int(item["id"])
                    for item in conn.execute(
                        "SELECT id FROM posts WHERE user_id = ?", (user.id,)
                    ).fetchall()
                ]
                comments_deleted = 0
                if post_ids:
                    cursor = conn.execute(
                        f"DELETE FROM comments WHERE post_id IN ({_placeholders(post_ids)})",
                        post_ids,
                    )
                    comments_deleted += cursor.rowcount
                posts_deleted = conn.execute(
                    "DELETE FROM posts WHERE user_id = ?", (user.id,)
                ).rowcount
                comments_deleted += conn.execute(
                    "DELETE FROM comments WHERE user_id = ?", (user.id,)
                ).rowcount
        except sqlite3.DatabaseError as exc:
            raise StorageError(f"Failed to delete user {external_id}: {exc}") from exc

        return DeletionSummary(
            user=user,
            posts_deleted=posts_deleted,
            comments_deleted=comments_deleted,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def get_tombstone(self, external_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT deleted_at FROM user_tombstones WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_datetime(str(row["deleted_at"]))

    # ------------------------------------------------------------------
    # Posts and comments
    # ------------------------------------------------------------------
    def create_post(
        self,
        user_id: int,
        *,
        title: str,
        slug: str,
        content: str,
        category: str = "general",
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Post:
        if not slug.strip():
            raise ValueError("Post slug must not be empty")

        created_at = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO posts (
                        user_id, slug, title, description, content, category,
                        image_url, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        slug.strip(),
                        title,
                        description,
                        content,
                        category,
                        image_url,
                        created_at,
                        created_at,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"A post with slug {slug!r} already exists") from exc
            post_id = cursor.lastrowid

        post = self.get_post(int(post_id))
        if post is None:
            raise RuntimeError("Failed to load post after creation")
        return post

    def get_post(self, post_id: int) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_post(row)

    def get_post_by_slug(self, slug: str) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM posts WHERE slug = ?", (slug,)).fetchone()
        if row is None:
            return None
        return self._row_to_post(row)

    def list_posts(self) -> List[Post]:
        """Return every post, newest first."""

        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM posts ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_post(row) for row in rows]

    def list_posts_for_user(self, user_id: int) -> List[Post]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM posts WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._row_to_post(row) for row in rows]

    def increment_post_visits(self, slug: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE posts SET visit_count = visit_count + 1 WHERE slug = ?",
                    (slug,),
                )
                return cursor.rowcount > 0
        except sqlite3.DatabaseError as exc:
            raise StorageError(f"Failed to count visit for {slug}: {exc}") from exc

    def create_comment(self, user_id: int, post_id: int, content: str) -> Comment:
        if not content.strip():
            raise ValueError("Comment content must not be empty")

        created_at = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO comments (user_id, post_id, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, post_id, content, created_at, created_at),
            )
            row = conn.execute(
                "SELECT * FROM comments WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._row_to_comment(row)

    def list_comments_for_user(self, user_id: int) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

    def list_comments_for_post(self, post_id: int) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE post_id = ? ORDER BY id",
                (post_id,),
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def find_orphans(self) -> OrphanReport:
        """Report posts without an owner and comments without an owner or post."""

        with self._connect() as conn:
            post_ids = self._orphan_post_ids(conn)
            comment_ids = self._orphan_comment_ids(conn)
        return OrphanReport(post_ids=tuple(post_ids), comment_ids=tuple(comment_ids))

    def purge_orphans(self) -> OrphanReport:
        """Delete orphaned rows and return the identifiers that were removed."""

        try:
            with self._transaction() as conn:
                post_ids = self._orphan_post_ids(conn)
                if post_ids:
                    conn.execute(
                        f"DELETE FROM posts WHERE id IN ({_placeholders(post_ids)})",
                        post_ids,
                    )
                # Comments on the posts just removed are orphans now as well.
                comment_ids = self._orphan_comment_ids(conn)
                if comment_ids:
                    conn.execute(
                        f"DELETE FROM comments WHERE id IN ({_placeholders(comment_ids)})",
                        comment_ids,
                    )
        except sqlite3.DatabaseError as exc:
            raise StorageError(f"Failed to purge orphaned content: {exc}") from exc

        return OrphanReport(post_ids=tuple(post_ids), comment_ids=tuple(comment_ids))

    @staticmethod
    def _orphan_post_ids(conn: sqlite3.Connection) -> List[int]:
        rows = conn.execute(
            """
            SELECT posts.id FROM posts
            LEFT JOIN users ON users.id = posts.user_id
            WHERE users.id IS NULL
            ORDER BY posts.id
            """
        ).fetchall()
        return [int(row["id"]) for row in rows]

    @staticmethod
    def _orphan_comment_ids(conn: sqlite3.Connection) -> List[int]:
        rows = conn.execute(
            """
            SELECT comments.id FROM comments
            LEFT JOIN users ON users.id = comments.user_id
            LEFT JOIN posts ON posts.id = comments.post_id
            WHERE users.id IS NULL OR posts.id IS NULL
            ORDER BY comments.id
            """
        ).fetchall()
        return [int(row["id"]) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            external_id=str(row["external_id"]),
            username=str(row["username"]),
            email=row["email"],
            image_url=row["image_url"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            last_event_at=_parse_optional_datetime(row["last_event_at"]),
        )

    def _row_to_post(self, row: sqlite3.Row) -> Post:
        return Post(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            slug=str(row["slug"]),
            title=str(row["title"]),
            description=row["description"],
            content=str(row["content"]),
            category=str(row["category"]),
            image_url=row["image_url"],
            visit_count=int(row["visit_count"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_comment(self, row: sqlite3.Row) -> Comment:
        return Comment(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            post_id=int(row["post_id"]),
            content=str(row["content"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )


__all__ = ["Database", "StorageError"]
