"""Grounder Agent – fetch and structure current fund facts for a query.

Steps for a query:
  1. Normalise the query (trim + case-fold) into a cache key
  2. Return the cached ``GroundingResult`` if it is younger than the TTL
  3. Otherwise run a web search for the fund category the query implies
  4. Extract structured ``Instrument`` facts from the search text with a
     second, JSON-mode completion
  5. Cache the result under the normalised key and return it

Failure policy: a failed search degrades to a hardcoded list of well-known
low-cost index funds (never cached, so the next request retries).  A failed
or empty extraction yields an empty instrument set, which the prompt
formatter turns into an explicit fallback notice for the generator.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

from ..config.settings import EXTRACTION_MODEL, GROUNDING_CACHE_TTL_SECONDS
from ..models.schemas import GroundingResult, Instrument, Outcome
from ..services.llm import create_client, message_text, parse_json_object
from ..tools.web_search import search_web

logger = logging.getLogger(__name__)

_UNKNOWN = "unknown"
_MAX_SEARCH_CHARS = 6000

FALLBACK_INSTRUMENTS: tuple[Instrument, ...] = (
    Instrument(name="UTI Nifty 50 Index Fund Direct Growth",
               category="index", fund_house="UTI Mutual Fund"),
    Instrument(name="HDFC Index Fund Nifty 50 Plan Direct Growth",
               category="index", fund_house="HDFC Mutual Fund"),
    Instrument(name="Nippon India Index Fund Nifty 50 Plan Direct Growth",
               category="index", fund_house="Nippon India Mutual Fund"),
    Instrument(name="Motilal Oswal Nifty 500 Index Fund Direct Growth",
               category="index", fund_house="Motilal Oswal Mutual Fund"),
)
FALLBACK_SOURCES: tuple[str, ...] = (
    "https://www.valueresearchonline.com",
    "https://www.moneycontrol.com/mutual-funds",
)

# First match wins; order matters ("index" before the cap buckets).
_CATEGORY_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("liquid", "emergency"), "liquid fund"),
    (("debt", "fixed income"), "debt fund"),
    (("index", "nifty", "sensex"), "index fund"),
    (("elss", "tax", "80c"), "ELSS tax saving fund"),
    (("large cap",), "large cap index fund"),
    (("mid cap",), "mid cap index fund"),
    (("small cap",), "small cap index fund"),
    (("flexi", "multi cap"), "Nifty 500 index fund"),
)

_EXTRACT_PROMPT = """\
Extract ONLY verified mutual fund data from the search results below.
Return a JSON object with a "funds" array.  Only include funds whose data you
can verify from the text.

Current month: {month}

Fields for each fund:
- fund_name: full official name (include "Direct" and "Growth" if applicable)
- category: one of equity, debt, hybrid, liquid, index, elss
- fund_house: AMC name
- expense_ratio: percentage string (e.g. "0.45%") or "unknown"
- return_1y: 1-year return as percentage string or "unknown"
- return_3y: 3-year CAGR as percentage string or "unknown"
- aum_crores: AUM in crores (number) or 0 if unknown

Only include DIRECT plans.  Prefer index funds (Nifty 50, Nifty Next 50,
Nifty 500).

Search results:
{content}

Original query: {query}

Output ONLY valid JSON: {{"funds": [...]}}
"""


def normalize_query(query: str) -> str:
    return query.strip().casefold()


def _current_month() -> str:
    return datetime.now(timezone.utc).strftime("%B %Y")


def fund_category_for(query: str) -> str:
    q = query.lower()
    for needles, category in _CATEGORY_HINTS:
        if any(n in q for n in needles):
            return category
    return "index fund"


def build_search_query(query: str) -> str:
    return (
        f"best {fund_category_for(query)} India {_current_month()} "
        "direct plan returns expense ratio AUM top performing"
    )


# ── Cache ────────────────────────────────────────────────────────────────

class GroundingCache:
    """Time-boxed map keyed by normalised query text.

    No LRU and no early invalidation: an entry lives until its TTL expires.
    Guarded by a lock because requests may run on several threads.
    """

    def __init__(
        self,
        ttl_seconds: float = GROUNDING_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[GroundingResult, float]] = {}
        self._lock = threading.Lock()

    def get(self, query: str) -> GroundingResult | None:
        key = normalize_query(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            result, stored_at = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return result

    def put(self, query: str, result: GroundingResult) -> None:
        with self._lock:
            self._entries[normalize_query(query)] = (result, self._clock())

    def purge(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, t) in self._entries.items() if now - t >= self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ── Extraction helpers ───────────────────────────────────────────────────

def _text(value: Any) -> str:
    if value is None:
        return _UNKNOWN
    text = str(value).strip()
    return text if text and text.upper() != "N/A" else _UNKNOWN


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_instruments(data: dict[str, Any]) -> list[Instrument]:
    """Turn the extraction reply into ``Instrument`` records, skipping junk."""
    funds = data.get("funds") or []
    if not isinstance(funds, list):
        return []
    out: list[Instrument] = []
    for f in funds:
        if not isinstance(f, dict):
            continue
        name = _text(f.get("fund_name"))
        if name == _UNKNOWN:
            continue
        out.append(Instrument(
            name=name,
            category=_text(f.get("category")),
            fund_house=_text(f.get("fund_house")),
            expense_ratio=_text(f.get("expense_ratio")),
            return_1y=_text(f.get("return_1y", f.get("1Y_return"))),
            return_3y=_text(f.get("return_3y", f.get("3Y_return"))),
            aum_crores=_number(f.get("aum_crores")),
        ))
    return out


def format_grounding_for_prompt(grounding: GroundingResult | None) -> str:
    """Render grounding facts (or an explicit marker) for the generator."""
    if grounding is None:
        return (
            "<FUND_DATA>\n"
            "No fund data retrieval was performed for this query.\n"
            "</FUND_DATA>"
        )

    if not grounding.instruments:
        names = "\n".join(f"- {i.name}" for i in FALLBACK_INSTRUMENTS)
        return (
            "<FUND_DATA>\n"
            f"Retrieved: {grounding.fetched_at}\n"
            "No verified fund data could be retrieved.\n"
            "If you recommend funds, use only these well-known index funds:\n"
            f"{names}\n"
            "Use approximate expense ratios (0.1-0.2% for index funds) and say "
            "that figures are approximate.\n"
            "</FUND_DATA>"
        )

    funds = [
        {
            "fund_name": i.name,
            "category": i.category,
            "fund_house": i.fund_house,
            "expense_ratio": i.expense_ratio,
            "return_1y": i.return_1y,
            "return_3y": i.return_3y,
            "aum_crores": i.aum_crores,
        }
        for i in grounding.instruments
    ]
    notice = (
        "NOTE: live retrieval failed; this is a fallback list of well-known funds.\n"
        if grounding.fallback_used else ""
    )
    return (
        "<FUND_DATA>\n"
        f"Retrieved: {grounding.fetched_at}\n"
        f"Query: {grounding.query_used}\n"
        f"Sources: {', '.join(grounding.sources) or 'none cited'}\n"
        f"{notice}"
        "VERIFIED FUND DATA (recommend ONLY these funds):\n"
        f"{json.dumps(funds, indent=2)}\n"
        "Do NOT fabricate fund names, returns or expense ratios.\n"
        "</FUND_DATA>"
    )


# ── Agent ────────────────────────────────────────────────────────────────

class GrounderAgent:
    """Cache-backed retrieval + extraction of instrument facts."""

    def __init__(
        self,
        llm: Any | None = None,
        cache: GroundingCache | None = None,
        search: Callable[..., Any] = search_web,
        extraction_model: str = EXTRACTION_MODEL,
    ):
        self._llm = llm or create_client()
        self.cache = cache if cache is not None else GroundingCache()
        self._search = search
        self.extraction_model = extraction_model

    def ground(self, query: str) -> Outcome[GroundingResult]:
        cached = self.cache.get(query)
        if cached is not None:
            logger.info("Grounding cache hit for %r", normalize_query(query))
            return self._outcome_for(cached)

        search_query = build_search_query(query)
        try:
            hit = self._search(self._llm, search_query)
        except Exception as exc:
            logger.warning("Retrieval failed, using fallback instruments: %s", exc)
            result = GroundingResult(
                query_used=search_query,
                instruments=FALLBACK_INSTRUMENTS,
                sources=FALLBACK_SOURCES,
                fallback_used=True,
            )
            return Outcome.degraded(result, f"retrieval failed: {exc}")

        instruments = self._extract(hit.content, query)
        result = GroundingResult(
            query_used=search_query,
            instruments=tuple(instruments),
            sources=tuple(hit.urls),
        )
        self.cache.put(query, result)
        logger.info(
            "Grounding complete: %d instruments, %d sources",
            len(result.instruments), len(result.sources),
        )
        return self._outcome_for(result)

    @staticmethod
    def _outcome_for(result: GroundingResult) -> Outcome[GroundingResult]:
        if not result.instruments:
            return Outcome.degraded(result, "no instruments extracted")
        return Outcome.ok(result)

    def _extract(self, content: str, query: str) -> list[Instrument]:
        if not content.strip():
            return []
        prompt = _EXTRACT_PROMPT.format(
            month=_current_month(),
            content=content[:_MAX_SEARCH_CHARS],
            query=query,
        )
        try:
            resp = self._llm.chat.completions.create(
                model=self.extraction_model,
                messages=[
                    {"role": "system", "content": (
                        "You extract structured fund data from search results. "
                        "Output ONLY valid JSON."
                    )},
                    {"role": "user", "content": prompt},
                ],
                temperature=0,
                max_tokens=2000,
                response_format={"type": "json_object"},
            )
            data = parse_json_object(message_text(resp))
        except Exception as exc:
            logger.warning("Instrument extraction failed: %s", exc)
            return []
        return parse_instruments(data)
