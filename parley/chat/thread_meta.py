"""Thread title and icon generation from the first user message."""

from __future__ import annotations

import logging
import re

from parley.llm.providers.base import Provider
from parley.llm.types import ModelMessage

logger = logging.getLogger(__name__)

TITLE_MODEL = "google/gemini-2.5-flash-lite"
DEFAULT_TITLE = "New Thread"
DEFAULT_ICON = "message-circle"

THREAD_ICONS: dict[str, str] = {
    "message-circle": "general thread or casual conversation",
    "message-square": "formal discussion or Q&A",
    "sparkles": "creative, AI, or magical topics",
    "lightbulb": "ideas, brainstorming, or suggestions",
    "code": "programming, coding, or computing topics",
    "book": "learning, education, or reading",
    "file-text": "documents, writing, or notes",
    "star": "important or highlighted topics",
    "heart": "personal, emotional, or relationship topics",
    "zap": "quick tasks, productivity, or energy",
}

TITLE_PROMPT = (
    "Generate a short, concise title (max 6 words) for the chat thread based on the "
    "user's message. Do not include quotes or special characters. Do not respond to "
    "the message or respond with a question. Return ONLY the title."
)

_QUOTES = re.compile(r"^[\"']|[\"']$")


def _icon_prompt() -> str:
    icon_list = "\n".join(f"- {name}: {desc}" for name, desc in THREAD_ICONS.items())
    return (
        "Select the most appropriate icon for a thread based on the user's message.\n\n"
        f"Available icons:\n{icon_list}\n\n"
        "Return ONLY the icon name. No explanation, no quotes, just the icon name."
    )


def clean_title(text: str) -> str:
    lines = text.strip().splitlines()
    first = _QUOTES.sub("", lines[0].strip()) if lines else ""
    words = first.split()
    return " ".join(words[:6]) or DEFAULT_TITLE


async def generate_thread_title(
    provider: Provider, message: str, model_id: str = TITLE_MODEL
) -> str:
    if not message.strip():
        return DEFAULT_TITLE
    try:
        text = await provider.complete(
            model_id, TITLE_PROMPT, [ModelMessage(role="user", content=message)]
        )
    except Exception:
        logger.exception("Failed to generate thread title")
        return DEFAULT_TITLE
    return clean_title(text)


async def generate_thread_icon(
    provider: Provider, message: str, model_id: str = TITLE_MODEL
) -> str:
    if not message.strip():
        return DEFAULT_ICON
    try:
        text = await provider.complete(
            model_id, _icon_prompt(), [ModelMessage(role="user", content=message)]
        )
    except Exception:
        logger.exception("Failed to generate thread icon")
        return DEFAULT_ICON
    icon = text.strip().strip("\"'").lower()
    return icon if icon in THREAD_ICONS else DEFAULT_ICON
