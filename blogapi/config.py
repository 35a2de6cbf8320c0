"""Configuration management for the blog backend."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_SITE_URL = "https://accesscodepro.blog"
DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "Web Design",
    "Development",
    "Tools",
    "Business",
    "Marketing",
)


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or invalid."""


@dataclass(frozen=True)
class SiteSettings:
    """Public site details used when building absolute URLs."""

    base_url: str = DEFAULT_SITE_URL
    categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    sitemap_max_age: int = 3600

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "SiteSettings":
        base_url = str(data.get("base_url") or DEFAULT_SITE_URL).strip().rstrip("/")
        raw_categories = data.get("categories")
        if raw_categories is None:
            categories = DEFAULT_CATEGORIES
        elif isinstance(raw_categories, (list, tuple)):
            categories = tuple(str(item).strip() for item in raw_categories if str(item).strip())
        else:
            raise ConfigurationError("site.categories must be a list of category names")
        try:
            max_age = int(data.get("sitemap_max_age", 3600))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("site.sitemap_max_age must be an integer") from exc
        return SiteSettings(base_url=base_url, categories=categories, sitemap_max_age=max_age)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup and passed by reference."""

    database_path: Path
    webhook_secret: Optional[str] = None
    site: SiteSettings = field(default_factory=SiteSettings)

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError(
                "Webhook signing secret is not configured. Set CLERK_WEBHOOK_SECRET."
            )
        return self.webhook_secret

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw dictionary data."""
        raw_db_path = data.get("database_path")
        if raw_db_path:
            candidate = Path(str(raw_db_path)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            database_path = candidate.resolve(strict=False)
        else:
            database_path = resolve_database_path(None)

        secret = data.get("webhook_secret")
        webhook_secret = str(secret).strip() if secret is not None else ""
        site_raw = data.get("site") or {}
        if not isinstance(site_raw, Mapping):
            raise ConfigurationError("The 'site' section must be a mapping")

        return Settings(
            database_path=database_path,
            webhook_secret=webhook_secret or None,
            site=SiteSettings.from_dict(site_raw),
        )


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the blog database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "blog.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "blog.yaml").resolve(strict=False)
    return candidate


def load_settings(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("BLOG_CONFIG"))

    raw: Dict[str, object] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        raw = dict(loaded)

    if env.get("CLERK_WEBHOOK_SECRET"):
        raw["webhook_secret"] = env["CLERK_WEBHOOK_SECRET"]
    if env.get("BLOG_SITE_URL"):
        site = dict(raw.get("site") or {})
        site["base_url"] = env["BLOG_SITE_URL"]
        raw["site"] = site

    settings = Settings.from_dict(raw, base_path=path.parent)
    if env.get("BLOG_DB_PATH"):
        settings = replace(settings, database_path=resolve_database_path(env["BLOG_DB_PATH"]))
    return settings


__all__ = [
    "ConfigurationError",
    "DEFAULT_CATEGORIES",
    "DEFAULT_SITE_URL",
    "Settings",
    "SiteSettings",
    "load_settings",
    "resolve_config_path",
    "resolve_database_path",
]
