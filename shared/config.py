"""Shared configuration utilities."""

import os
from typing import Dict, Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_bool_env(key: str, default: bool = False) -> bool:
    """Read a true/false flag from the environment."""
    return get_env(key, "true" if default else "false").lower() in ("1", "true", "yes")


def get_database_url() -> str:
    """Get database URL from environment."""
    return get_env(
        "DATABASE_URL",
        "sqlite:///chat2notion.db",
        required=False
    )


def get_sync_config() -> dict:
    """Get sync engine settings from environment."""
    return {
        "auto_sync_enabled": get_bool_env("AUTO_SYNC_ENABLED", False),
        "interval_minutes": int(get_env("SYNC_INTERVAL_MINUTES", "60")),
        "max_items_per_cycle": int(get_env("SYNC_MAX_ITEMS_PER_CYCLE", "10")),
        "sub_batch_size": int(get_env("SYNC_SUB_BATCH_SIZE", "5")),
        "listing_limit": int(get_env("SYNC_LISTING_LIMIT", "50")),
        "max_listing_pages": int(get_env("SYNC_MAX_LISTING_PAGES", "20")),
        "platforms": [p.strip() for p in get_env("SYNC_PLATFORMS", "").split(",") if p.strip()],
    }


def get_notion_config() -> dict:
    """Get Notion write API configuration from environment."""
    return {
        "api_token": get_env("NOTION_API_TOKEN"),
        "database_id": get_env("NOTION_DATABASE_ID"),
        "requests_per_window": int(get_env("NOTION_REQUESTS_PER_MINUTE", "30")),
        "window_seconds": float(get_env("NOTION_RATE_WINDOW_SECONDS", "60")),
        "stale_after": float(get_env("NOTION_QUEUE_STALE_SECONDS", "300")),
    }


def get_http_timeout() -> float:
    """Per-request timeout in seconds for calls to chat platforms."""
    return float(get_env("HTTP_TIMEOUT_SECONDS", "30"))


def get_source_headers(platform: str) -> Dict[str, str]:
    """
    Build request headers for a chat platform from environment.

    Reads ``<PLATFORM>_COOKIE`` and ``<PLATFORM>_TOKEN``; the token is sent as a
    bearer token.
    """
    prefix = platform.upper()
    headers = {}
    cookie = get_env(f"{prefix}_COOKIE")
    token = get_env(f"{prefix}_TOKEN")
    if cookie:
        headers["Cookie"] = cookie
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers
