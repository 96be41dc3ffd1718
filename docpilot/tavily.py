"""Tavily search client.

``search`` returns the raw response, or an ``{"error": ...}`` dict when the
request fails. ``lookup`` reduces a response to the summary text and source
URLs the web search tool hands back to the model, and raises on failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx


logger = logging.getLogger("uvicorn.error")

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
TAVILY_TOPICS = {"general", "news", "finance"}


class TavilySearchError(RuntimeError):
    """Tavily answered with an error, or could not be reached."""


@dataclass
class SearchSummary:
    text: str
    sources: List[str] = field(default_factory=list)


def summarize_response(data: Dict[str, Any]) -> SearchSummary:
    """Prefer Tavily's own answer; otherwise join ``title: content`` snippets."""
    sources: List[str] = []
    snippets: List[str] = []
    for item in data.get("results") or []:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if url and url not in sources:
            sources.append(url)
        content = str(item.get("content") or "").strip()
        if content:
            title = str(item.get("title") or "").strip()
            snippets.append(f"{title}: {content}" if title else content)
    text = str(data.get("answer") or "").strip() or "\n\n".join(snippets)
    return SearchSummary(text=text, sources=sources)


class TavilyClient:
    def __init__(self, api_key: Optional[str], timeout: float = 60):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        include_answer: bool = True,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
            "api_key": self.api_key,
        }
        topic = str(topic or "").strip().lower()
        if topic in TAVILY_TOPICS:
            payload["topic"] = topic
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key}
        try:
            resp = await self.client.post(TAVILY_SEARCH_URL, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def lookup(self, query: str, search_depth: str = "basic", max_results: int = 5) -> SearchSummary:
        data = await self.search(query, search_depth=search_depth, max_results=max_results, include_answer=True)
        if data.get("error"):
            logger.info("Tavily search for %r failed: %s", query, data.get("error"))
            raise TavilySearchError(f"tavily search failed: {data.get('error')}")
        return summarize_response(data)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
