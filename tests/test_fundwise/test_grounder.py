"""Tests for the Grounder agent and its cache (mocked search + extraction)."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from src.fundwise.agents.grounder import (
    FALLBACK_INSTRUMENTS,
    GrounderAgent,
    GroundingCache,
    build_search_query,
    format_grounding_for_prompt,
    fund_category_for,
    normalize_query,
    parse_instruments,
)
from src.fundwise.models.schemas import GroundingResult, Instrument, OutcomeStatus
from src.fundwise.tools.web_search import SearchHit, search_web

from conftest import make_completion

_FUNDS = {
    "funds": [
        {
            "fund_name": "UTI Nifty 50 Index Fund Direct Growth",
            "category": "index",
            "fund_house": "UTI Mutual Fund",
            "expense_ratio": "0.18%",
            "return_1y": "12.1%",
            "return_3y": "14.0%",
            "aum_crores": 19000,
        },
        {
            "fund_name": "HDFC Index Fund Nifty 50 Plan Direct Growth",
            "category": "index",
            "fund_house": "HDFC Mutual Fund",
            "expense_ratio": "N/A",
            "aum_crores": "lots",
        },
    ]
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _agent(search=None, extraction=_FUNDS, clock=None):
    llm = MagicMock()
    llm.chat.completions.create.return_value = make_completion(extraction)
    search = search or MagicMock(return_value=SearchHit(
        content="UTI Nifty 50 ... expense ratio 0.18% ...",
        urls=["https://www.valueresearchonline.com/funds/uti"],
    ))
    cache = GroundingCache(ttl_seconds=1800, clock=clock or FakeClock())
    return GrounderAgent(llm=llm, cache=cache, search=search), llm, search


# ── Query helpers ───────────────────────────────────────────────────────

class TestQueryHelpers:
    def test_normalize(self):
        assert normalize_query("  Which FUND?  ") == "which fund?"

    @pytest.mark.parametrize("query, category", [
        ("Where do I park my emergency money?", "liquid fund"),
        ("best debt options", "debt fund"),
        ("Nifty tracker?", "index fund"),
        ("save tax under 80C", "ELSS tax saving fund"),
        ("mid cap exposure", "mid cap index fund"),
        ("flexi cap or not", "Nifty 500 index fund"),
        ("start a SIP", "index fund"),
    ])
    def test_category_hints(self, query, category):
        assert fund_category_for(query) == category

    def test_search_query_is_dated(self):
        q = build_search_query("emergency fund")
        assert q.startswith("best liquid fund India ")
        assert "direct plan" in q


# ── Cache ───────────────────────────────────────────────────────────────

class TestGroundingCache:
    def _result(self):
        return GroundingResult(query_used="q", instruments=(), sources=())

    def test_hit_within_ttl_returns_same_object(self):
        clock = FakeClock()
        cache = GroundingCache(ttl_seconds=60, clock=clock)
        result = self._result()
        cache.put("Which Fund", result)
        clock.now += 59
        assert cache.get("  which fund ") is result

    def test_expired_entry_dropped_on_read(self):
        clock = FakeClock()
        cache = GroundingCache(ttl_seconds=60, clock=clock)
        cache.put("q", self._result())
        clock.now += 60
        assert cache.get("q") is None
        assert len(cache) == 0

    def test_purge(self):
        clock = FakeClock()
        cache = GroundingCache(ttl_seconds=60, clock=clock)
        cache.put("old", self._result())
        clock.now += 30
        cache.put("new", self._result())
        clock.now += 40
        assert cache.purge() == 1
        assert cache.get("new") is not None


# ── Agent ───────────────────────────────────────────────────────────────

class TestGrounderAgent:
    def test_happy_path(self):
        agent, llm, search = _agent()
        outcome = agent.ground("Which fund should I start a SIP in?")
        assert outcome.status is OutcomeStatus.OK
        result = outcome.value
        assert [i.name for i in result.instruments] == [
            "UTI Nifty 50 Index Fund Direct Growth",
            "HDFC Index Fund Nifty 50 Plan Direct Growth",
        ]
        assert result.instruments[1].expense_ratio == "unknown"
        assert result.instruments[1].aum_crores == 0.0
        assert result.sources == ("https://www.valueresearchonline.com/funds/uti",)
        assert result.fallback_used is False
        search.assert_called_once()
        assert llm.chat.completions.create.call_args.kwargs["temperature"] == 0

    def test_cache_idempotence(self):
        agent, llm, search = _agent()
        first = agent.ground("Which fund should I start a SIP in?").value
        second = agent.ground("  which fund should i start a sip in?").value
        assert second is first
        assert search.call_count == 1
        assert llm.chat.completions.create.call_count == 1

    def test_cache_expiry_triggers_new_retrieval(self):
        clock = FakeClock()
        agent, _, search = _agent(clock=clock)
        agent.ground("q")
        clock.now += 1800
        agent.ground("q")
        assert search.call_count == 2

    def test_retrieval_failure_uses_fallback_uncached(self):
        search = MagicMock(side_effect=RuntimeError("search down"))
        agent, llm, _ = _agent(search=search)
        outcome = agent.ground("Which fund?")
        assert outcome.status is OutcomeStatus.DEGRADED
        assert outcome.value.instruments == FALLBACK_INSTRUMENTS
        assert outcome.value.fallback_used is True
        assert "search down" in outcome.reason
        llm.chat.completions.create.assert_not_called()

        agent.ground("Which fund?")
        assert search.call_count == 2
        assert len(agent.cache) == 0

    def test_extraction_failure_yields_empty_cached_result(self):
        agent, llm, search = _agent()
        llm.chat.completions.create.side_effect = RuntimeError("bad gateway")
        outcome = agent.ground("Which fund?")
        assert outcome.status is OutcomeStatus.DEGRADED
        assert outcome.value.instruments == ()
        assert len(agent.cache) == 1

    def test_empty_search_text_skips_extraction(self):
        search = MagicMock(return_value=SearchHit(content="  ", urls=[]))
        agent, llm, _ = _agent(search=search)
        outcome = agent.ground("Which fund?")
        assert outcome.value.instruments == ()
        assert outcome.value.sources == ()
        assert outcome.value.fallback_used is False
        llm.chat.completions.create.assert_not_called()


# ── Extraction + prompt formatting ─────────────────────────────────────

class TestParseInstruments:
    def test_skips_junk(self):
        funds = parse_instruments({"funds": [{"category": "index"}, "x", {"fund_name": "A"}]})
        assert [f.name for f in funds] == ["A"]
        assert funds[0].category == "unknown"

    def test_non_list(self):
        assert parse_instruments({"funds": "none"}) == []


class TestFormatGrounding:
    def test_no_grounding_marker(self):
        assert "No fund data retrieval was performed" in format_grounding_for_prompt(None)

    def test_empty_instruments_fallback_notice(self):
        text = format_grounding_for_prompt(
            GroundingResult(query_used="q", instruments=(), sources=())
        )
        assert "No verified fund data" in text
        for inst in FALLBACK_INSTRUMENTS:
            assert inst.name in text

    def test_verified_funds(self):
        text = format_grounding_for_prompt(GroundingResult(
            query_used="q",
            instruments=(Instrument(name="UTI Nifty 50", category="index", expense_ratio="0.18%"),),
            sources=("https://a",),
        ))
        assert "VERIFIED FUND DATA" in text
        assert '"expense_ratio": "0.18%"' in text
        assert "live retrieval failed" not in text

    def test_uncited_live_result(self):
        text = format_grounding_for_prompt(GroundingResult(
            query_used="q",
            instruments=(Instrument(name="UTI Nifty 50", category="index"),),
            sources=(),
        ))
        assert "Sources: none cited" in text


# ── Web search tool ─────────────────────────────────────────────────────

class TestWebSearch:
    def test_collects_text_and_unique_citations(self):
        ann = SimpleNamespace(type="url_citation", url="https://a")
        block = SimpleNamespace(type="output_text", text="Fund data", annotations=[ann, ann])
        response = SimpleNamespace(output=[
            SimpleNamespace(type="web_search_call"),
            SimpleNamespace(type="message", content=[block]),
        ])
        llm = MagicMock()
        llm.responses.create.return_value = response

        hit = search_web(llm, "best index fund India", model="m")
        assert hit.content == "Fund data"
        assert hit.urls == ["https://a"]
        kwargs = llm.responses.create.call_args.kwargs
        assert kwargs["tools"] == [{"type": "web_search"}]
        assert "best index fund India" in kwargs["input"]
