from __future__ import annotations

import re
from urllib.parse import urlparse

from flask import jsonify


_WWW_PREFIX = re.compile(r"^www\.", re.IGNORECASE)
_HTTP_PREFIX = re.compile(r"^https?://", re.IGNORECASE)


def ensure_scheme(url: str) -> str:
    value = (url or "").strip()
    if value and _WWW_PREFIX.match(value):
        return f"https://{value}"
    return value


def is_http_url(url: str | None) -> bool:
    return bool(url) and bool(_HTTP_PREFIX.match(url.strip()))


def extract_domain(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return ""
    parsed = urlparse(value if value.lower().startswith("http") else f"https://{value}")
    host = parsed.hostname or ""
    if not host:
        match = re.match(r"(?:https?://)?(?:www\.)?([^/]+)", value)
        return match.group(1) if match else value
    return host.replace("www.", "", 1)


def normalize_url(url: str) -> str:
    """Host without www plus path without trailing slash, lowercased."""
    value = (url or "").strip()
    if not value:
        return ""
    parsed = urlparse(value if value.lower().startswith("http") else f"https://{value}")
    if not parsed.hostname:
        return value.lower().rstrip("/")
    host = _WWW_PREFIX.sub("", parsed.hostname)
    path = parsed.path[:-1] if parsed.path.endswith("/") else parsed.path
    return f"{host}{path}".lower()


def dedupe_key(url: str) -> str:
    return (url or "").strip().lower().rstrip("/")


def to_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "on"}


def parse_int(value, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def ok_response(http_status: int = 200, **data):
    return jsonify({"success": True, **data}), http_status


def error_response(message: str, http_status: int, **extra):
    return jsonify({"success": False, "error": message, **extra}), http_status
