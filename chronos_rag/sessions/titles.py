"""Short session titles generated from the first user message."""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from loguru import logger

from chronos_rag.generation.prompts import TITLE_PROMPT
from chronos_rag.utils.helpers import utcnow

TITLE_MODEL = "claude-haiku-4-5-20251001"
MAX_TITLE_CHARS = 60
MIN_TITLE_CHARS = 3
MAX_PROMPT_CHARS = 500


def fallback_title(now: datetime | None = None) -> str:
    return f"Chat from {(now or utcnow()).strftime('%Y-%m-%d')}"


def generate_session_title(
    first_message: str,
    client=None,
    model: str = TITLE_MODEL,
    clock: Callable[[], datetime] = utcnow,
) -> str:
    """
    Ask Claude for a 3-6 word title.

    Any failure (missing key, API error, empty or implausible output)
    falls back to "Chat from YYYY-MM-DD".
    """
    try:
        if client is None:
            from anthropic import Anthropic  # lazy import
            client = Anthropic()

        response = client.messages.create(
            model=model,
            max_tokens=50,
            temperature=0.3,
            messages=[
                {
                    "role": "user",
                    "content": TITLE_PROMPT.format(message=first_message[:MAX_PROMPT_CHARS]),
                }
            ],
        )
        raw = response.content[0].text if response.content else ""
    except Exception as exc:
        logger.warning(f"[Titles] Title generation failed: {exc}")
        return fallback_title(clock())

    title = raw.strip().strip("\"'").strip()
    if len(title) < MIN_TITLE_CHARS:
        return fallback_title(clock())
    if len(title) > MAX_TITLE_CHARS:
        title = title[:MAX_TITLE_CHARS].rstrip()
    return title
