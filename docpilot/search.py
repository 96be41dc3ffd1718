"""Web search exposed to the narration model as a callable tool.

Results travel back to the run through a SearchFinding: the first query is kept,
the latest summary text replaces the previous one, and source URLs accumulate
without duplicates in the order they were first seen.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .llm import Tool
from .tavily import SearchSummary, TavilyClient


logger = logging.getLogger("uvicorn.error")

SEARCH_TOOL_NAME = "web_search"
SEARCH_FAILURE_TEXT = "Web search failed; answer from existing knowledge."
SEARCH_EMPTY_TEXT = "No web results found."


@dataclass
class SearchFinding:
    query: Optional[str] = None
    text: Optional[str] = None
    sources: List[str] = field(default_factory=list)
    invocations: int = 0
    _text_ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def used(self) -> bool:
        return self.invocations > 0

    def record(self, query: Optional[str], text: Optional[str], sources: List[str]) -> None:
        self.invocations += 1
        if self.query is None and query:
            self.query = query
        if text:
            self.text = text
            self._text_ready.set()
        for url in sources:
            if url and url not in self.sources:
                self.sources.append(url)

    async def wait_for_text(self, timeout: float) -> Optional[str]:
        """Wait up to ``timeout`` seconds for summary text, then return whatever is there."""
        if self.text is not None:
            return self.text
        try:
            await asyncio.wait_for(self._text_ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Search findings not ready after %.1fs; continuing without them", timeout)
        return self.text

    def snapshot(self) -> Dict[str, Any]:
        return {"query": self.query, "text": self.text, "sources": list(self.sources)}


class WebSearchTool:
    def __init__(
        self,
        client: TavilyClient,
        finding: SearchFinding,
        search_depth: str = "basic",
        max_results: int = 5,
        run_id: Optional[str] = None,
    ):
        self.client = client
        self.finding = finding
        self.search_depth = search_depth
        self.max_results = max_results
        self.run_id = run_id

    async def web_search(self, query: str) -> SearchSummary:
        return await self.client.lookup(query, search_depth=self.search_depth, max_results=self.max_results)

    async def __call__(self, arguments: Dict[str, Any]) -> str:
        query = str(arguments.get("query") or "").strip()
        if not query:
            return "A non-empty query is required."
        try:
            found = await self.web_search(query)
        except Exception as exc:
            logger.warning("Run %s web search failed for %r: %s", self.run_id, query, exc)
            self.finding.record(query, None, [])
            return SEARCH_FAILURE_TEXT
        self.finding.record(query, found.text, found.sources)
        text = found.text or SEARCH_EMPTY_TEXT
        if found.sources:
            text += "\n\nSources:\n" + "\n".join(found.sources)
        return text

    def as_tool(self) -> Tool:
        return Tool(
            name=SEARCH_TOOL_NAME,
            description="Search the web for current information. Returns a summary and source URLs.",
            parameters={
                "type": "object",
                "properties": {"query": {"type": "string", "description": "The search query"}},
                "required": ["query"],
            },
            execute=self,
        )
