"""FastAPI application exposing the webhook receiver and public read endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

import anyio
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from .config import ConfigurationError, Settings, load_settings
from .database import Database, StorageError
from .models import Post
from .security import WebhookVerificationFailed, WebhookVerifier
from .sitemap import render_sitemap
from .webhooks import EventPayloadError, UserLifecycleSync

logger = logging.getLogger("blogapi.service")

WEBHOOK_PATH = "/webhooks/clerk"


class PostResponse(BaseModel):
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


def post_to_response(post: Post) -> PostResponse:
    return PostResponse(
        id=post.id,
        user_id=post.user_id,
        slug=post.slug,
        title=post.title,
        description=post.description,
        content=post.content,
        category=post.category,
        image_url=post.image_url,
        visit_count=post.visit_count,
        created_at=post.created_at,
        updated_at=post.updated_at,
    )


def _build_verifier(settings: Settings) -> WebhookVerifier | None:
    try:
        return WebhookVerifier(settings.require_webhook_secret())
    except ConfigurationError as exc:
        logger.error("Webhook endpoint disabled: %s", exc)
        return None


def register_webhook_routes(
    app: FastAPI,
    sync: UserLifecycleSync,
    *,
    verifier: WebhookVerifier | None,
) -> None:
    """Expose the identity-provider webhook receiver."""

    @app.post(WEBHOOK_PATH)
    async def receive_webhook(request: Request) -> JSONResponse:
        if verifier is None:
            logger.error("Rejecting webhook delivery: signing secret is not configured")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"message": "Webhook secret needed!"},
            )

        payload = await request.body()
        try:
            event = verifier.verify(payload, request.headers)
        except WebhookVerificationFailed:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"message": "Webhook verification failed!"},
            )

        logger.info("Webhook verified: %s (delivery %s)", event.type, event.delivery_id)

        try:
            outcome = await sync.dispatch(event)
        except EventPayloadError as exc:
            logger.warning("Rejecting %s event: %s", event.type, exc)
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"message": "Webhook payload rejected", "error": str(exc)},
            )
        except StorageError as exc:
            logger.exception("Database operation failed while handling %s", event.type)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"message": "Database operation failed", "error": str(exc)},
            )

        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"message": "Webhook processed successfully", **outcome.as_dict()},
        )


def register_public_routes(app: FastAPI, database: Database, settings: Settings) -> None:
    """Expose the health check, sitemap and post read endpoints."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/sitemap.xml")
    async def sitemap() -> Response:
        try:
            posts = await anyio.to_thread.run_sync(database.list_posts)
            body = render_sitemap(posts, settings.site)
        except Exception:
            logger.exception("Error generating sitemap")
            return PlainTextResponse(
                "Error generating sitemap",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(
            content=body,
            media_type="application/xml",
            headers={"Cache-Control": f"public, max-age={settings.site.sitemap_max_age}"},
        )

    @app.get("/posts/{slug}", response_model=PostResponse)
    async def get_post(slug: str) -> PostResponse:
        try:
            await anyio.to_thread.run_sync(database.increment_post_visits, slug)
        except StorageError:
            # Counting a visit must never break reading the post.
            logger.exception("Error incrementing visit count for %s", slug)

        post = await anyio.to_thread.run_sync(database.get_post_by_slug, slug)
        if post is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
        return post_to_response(post)


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the blog backend."""

    app_settings = settings or load_settings()
    db = database or Database(app_settings.database_path)
    db.initialize()

    verifier = _build_verifier(app_settings)
    sync = UserLifecycleSync(db)

    app = FastAPI(
        title="Blog Backend",
        version="1.0.0",
        description="Account synchronisation and public content endpoints for the blog.",
    )
    app.state.settings = app_settings
    app.state.database = db
    app.state.sync = sync
    app.state.verifier = verifier

    register_public_routes(app, db, app_settings)
    register_webhook_routes(app, sync, verifier=verifier)

    return app


__all__ = ["PostResponse", "WEBHOOK_PATH", "create_app", "post_to_response"]
