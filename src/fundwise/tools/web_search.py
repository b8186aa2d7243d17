"""Web search tool – retrieval capability used for grounding.

Wraps the OpenAI Responses API with the hosted ``web_search`` tool.  The
output is unstructured: the concatenated answer text plus any URLs cited in
the ``url_citation`` annotations.  Structuring the text is the grounder's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..config.settings import SEARCH_MODEL

logger = logging.getLogger(__name__)

_SEARCH_INSTRUCTIONS = """\
Search for: {query}

Find the top performing mutual funds / index funds matching this query.
For each fund include:
- Full official fund name (Direct Growth plan)
- Fund house / AMC name
- Expense ratio
- 1 year return percentage
- 3 year CAGR percentage
- AUM in crores
- Fund category

Prefer Direct Plan funds from reputable AMCs (UTI, HDFC, ICICI Prudential,
SBI, Nippon India, Kotak, Axis, Mirae Asset, Motilal Oswal, DSP).
Report factual data only, from sources such as Value Research, Moneycontrol,
ET Money, Groww or AMC websites.
"""


@dataclass
class SearchHit:
    content: str
    urls: list[str] = field(default_factory=list)


def _iter_output_text(response: Any):
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message":
            continue
        for block in getattr(item, "content", None) or []:
            if getattr(block, "type", None) == "output_text":
                yield block


def search_web(llm: Any, query: str, *, model: str = SEARCH_MODEL) -> SearchHit:
    """Run one hosted web search.  Exceptions propagate to the caller."""
    logger.info("Web search: %s", query)
    response = llm.responses.create(
        model=model,
        tools=[{"type": "web_search"}],
        input=_SEARCH_INSTRUCTIONS.format(query=query),
    )

    parts: list[str] = []
    urls: list[str] = []
    for block in _iter_output_text(response):
        parts.append(block.text or "")
        for ann in getattr(block, "annotations", None) or []:
            url = getattr(ann, "url", None)
            if getattr(ann, "type", None) == "url_citation" and url and url not in urls:
                urls.append(url)

    hit = SearchHit(content="".join(parts), urls=urls)
    logger.info("Web search returned %d chars, %d urls", len(hit.content), len(urls))
    return hit
