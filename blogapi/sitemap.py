"""XML sitemap generation for search engines."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import quote

from fastapi.templating import Jinja2Templates

from .config import SiteSettings
from .models import Post

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


@dataclass(frozen=True)
class SitemapEntry:
    loc: str
    lastmod: str
    changefreq: str
    priority: str


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _template_environment() -> Jinja2Templates:
    return Jinja2Templates(directory=str(TEMPLATE_DIR))


def build_entries(
    posts: Iterable[Post],
    site: SiteSettings,
    *,
    now: Optional[datetime] = None,
) -> List[SitemapEntry]:
    """Return the sitemap entries in output order: static pages, categories, posts."""

    current = _isoformat(now or datetime.now(timezone.utc))
    base = site.base_url.rstrip("/")

    entries = [
        SitemapEntry(loc=base, lastmod=current, changefreq="daily", priority="1.0"),
        SitemapEntry(loc=f"{base}/posts", lastmod=current, changefreq="daily", priority="0.9"),
    ]
    for category in site.categories:
        entries.append(
            SitemapEntry(
                loc=f"{base}/posts?cat={quote(category)}",
                lastmod=current,
                changefreq="weekly",
                priority="0.7",
            )
        )
    for post in posts:
        entries.append(
            SitemapEntry(
                loc=f"{base}/posts/{quote(post.slug)}",
                lastmod=_isoformat(post.updated_at or post.created_at),
                changefreq="weekly",
                priority="0.8",
            )
        )
    return entries


def render_sitemap(
    posts: Iterable[Post],
    site: SiteSettings,
    *,
    now: Optional[datetime] = None,
    templates: Jinja2Templates | None = None,
) -> str:
    environment = templates or _template_environment()
    template = environment.get_template("sitemap.xml")
    return template.render(entries=build_entries(posts, site, now=now))


__all__ = ["SitemapEntry", "build_entries", "render_sitemap"]
