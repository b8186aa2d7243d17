"""OpenAI client construction and reply parsing shared by the agents."""

from __future__ import annotations

import json
from typing import Any

from openai import OpenAI

from ..config.settings import LLM_TIMEOUT_SECONDS, OPENAI_API_KEY, OPENAI_BASE_URL


def create_client() -> OpenAI:
    kwargs: dict[str, Any] = {"base_url": OPENAI_BASE_URL, "api_key": OPENAI_API_KEY}
    if LLM_TIMEOUT_SECONDS is not None:
        kwargs["timeout"] = LLM_TIMEOUT_SECONDS
    return OpenAI(**kwargs)


def message_text(resp: Any) -> str:
    """Text of the first choice of a chat completion ('' when absent)."""
    if not resp.choices:
        return ""
    return (resp.choices[0].message.content or "").strip()


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM reply, tolerating markdown fences.

    Raises ``ValueError`` (``json.JSONDecodeError`` included) when the reply
    is empty or is not a JSON object.
    """
    text = raw.strip()
    if "```" in text:
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    if not text:
        raise ValueError("empty reply")
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data
