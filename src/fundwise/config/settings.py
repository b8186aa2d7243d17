"""Runtime settings for the fundwise pipeline.

Values come from the environment (a project-root ``.env`` is loaded first so
local development works without exporting anything).  Everything is a plain
module constant so agents can import exactly what they need.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parents[3] / ".env")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# ── LLM provider ─────────────────────────────────────────────────────────

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None

# No deadline by default: a slow upstream call blocks its request chain.
LLM_TIMEOUT_SECONDS = _env_float("LLM_TIMEOUT_SECONDS", None)

CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini")
GENERATOR_MODEL = os.getenv("GENERATOR_MODEL", "gpt-4.1")
REPAIR_MODEL = os.getenv("REPAIR_MODEL", GENERATOR_MODEL)
SEARCH_MODEL = os.getenv("SEARCH_MODEL", "gpt-4.1")
EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "gpt-4.1")

GENERATOR_MAX_TOKENS = _env_int("GENERATOR_MAX_TOKENS", 4000)

FREE_CHAT_MODEL = os.getenv("FREE_CHAT_MODEL", GENERATOR_MODEL)
FREE_CHAT_TEMPERATURE = _env_float("FREE_CHAT_TEMPERATURE", 0.7)
FREE_CHAT_MAX_TOKENS = _env_int("FREE_CHAT_MAX_TOKENS", 4000)

# ── Pipeline knobs ───────────────────────────────────────────────────────

GROUNDING_CACHE_TTL_SECONDS = _env_int("GROUNDING_CACHE_TTL_SECONDS", 30 * 60)
MAX_GENERATION_ATTEMPTS = _env_int("MAX_GENERATION_ATTEMPTS", 3)
KEEPALIVE_INTERVAL_SECONDS = _env_float("KEEPALIVE_INTERVAL_SECONDS", 15.0)
# Prior turns replayed to the model on a follow-up question.
MAX_CONTEXT_MESSAGES = _env_int("MAX_CONTEXT_MESSAGES", 20)

# ── Observability ────────────────────────────────────────────────────────

LANGFUSE_PUBLIC_KEY = os.getenv("LANGFUSE_PUBLIC_KEY", "")
LANGFUSE_SECRET_KEY = os.getenv("LANGFUSE_SECRET_KEY", "")
LANGFUSE_HOST = os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger once for scripts and servers."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # The SDK is chatty at INFO (one line per HTTP request).
    logging.getLogger("httpx").setLevel(logging.WARNING)
