"""Shared utility functions used across the RAG core."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import orjson

SECONDS_PER_DAY = 86_400


# --- Text Utilities -----------------------------------------------------------

def normalise_text(text: str) -> str:
    """Lower-case and collapse whitespace runs to single spaces."""
    return re.sub(r"\s+", " ", text.lower()).strip()


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


# --- Time Utilities -----------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC so ages can be compared safely."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_days(dt: datetime, now: datetime) -> float:
    return (ensure_utc(now) - ensure_utc(dt)).total_seconds() / SECONDS_PER_DAY


def format_timestamp(seconds: float) -> str:
    """Format an offset as M:SS, or H:MM:SS past the hour."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def url_with_timestamp(url: str, start_seconds: float) -> str:
    """
    Deep-link a video URL to an offset.

    YouTube takes a ``t`` query parameter, Vimeo a ``#t=Ns`` fragment and
    HTML5 players a ``#t=N`` fragment.
    """
    parts = urlsplit(url)
    offset = int(start_seconds)
    host = parts.netloc.lower()

    if "youtube.com" in host or "youtu.be" in host:
        query = dict(parse_qsl(parts.query))
        query["t"] = str(offset)
        return urlunsplit(parts._replace(query=urlencode(query)))
    if "vimeo.com" in host:
        return urlunsplit(parts._replace(fragment=f"t={offset}s"))
    return urlunsplit(parts._replace(fragment=f"t={offset}"))


# --- File I/O -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (fast, handles datetime/UUID)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))


def load_json(path: str | Path) -> Any:
    """Load JSON data from file."""
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())


def ensure_dirs(*paths: str | Path) -> None:
    """Create directories (and parents) if they don't exist."""
    for p in paths:
        Path(p).mkdir(parents=True, exist_ok=True)
