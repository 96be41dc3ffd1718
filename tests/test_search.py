import asyncio
import time

import pytest

from docpilot.search import SEARCH_FAILURE_TEXT, SEARCH_TOOL_NAME, SearchFinding, WebSearchTool
from tests.fakes import FakeTavilyClient


def test_finding_merge_rules():
    finding = SearchFinding()
    finding.record("first query", "first text", ["https://a", "https://b"])
    finding.record("second query", None, ["https://b", "https://c"])
    finding.record("third query", "latest text", ["https://a"])
    assert finding.query == "first query"
    assert finding.text == "latest text"
    assert finding.sources == ["https://a", "https://b", "https://c"]
    assert finding.invocations == 3
    assert finding.used


def test_finding_never_clears_text():
    finding = SearchFinding()
    finding.record("q", "kept", [])
    finding.record("q", "", [])
    assert finding.text == "kept"


@pytest.mark.asyncio
async def test_wait_for_text_returns_late_findings():
    finding = SearchFinding()

    async def arrive_later():
        await asyncio.sleep(0.02)
        finding.record("q", "late text", ["https://late"])

    task = asyncio.create_task(arrive_later())
    text = await finding.wait_for_text(1.0)
    await task
    assert text == "late text"


@pytest.mark.asyncio
async def test_wait_for_text_is_bounded():
    finding = SearchFinding()
    finding.record("q", None, [])
    start = time.monotonic()
    text = await finding.wait_for_text(0.05)
    assert text is None
    assert time.monotonic() - start < 1.0


@pytest.mark.asyncio
async def test_web_search_tool_records_finding_and_returns_text():
    tavily = FakeTavilyClient(
        api_key="key",
        search_response={"answer": "Sunny.", "results": [{"url": "https://w", "content": "x"}]},
    )
    finding = SearchFinding()
    tool = WebSearchTool(tavily, finding, search_depth="advanced", max_results=3).as_tool()
    assert tool.name == SEARCH_TOOL_NAME
    assert tool.definition()["function"]["parameters"]["required"] == ["query"]
    reply = await tool.execute({"query": "weather today"})
    assert reply.startswith("Sunny.")
    assert "https://w" in reply
    assert finding.snapshot() == {"query": "weather today", "text": "Sunny.", "sources": ["https://w"]}
    assert tavily.search_calls[0]["search_depth"] == "advanced"
    assert tavily.search_calls[0]["max_results"] == 3
    assert tavily.search_calls[0]["include_answer"] is True


@pytest.mark.asyncio
async def test_web_search_tool_swallows_search_errors():
    tavily = FakeTavilyClient(api_key="key", search_response={"error": "http_status", "status_code": 500})
    finding = SearchFinding()
    tool = WebSearchTool(tavily, finding)
    reply = await tool({"query": "anything"})
    assert reply == SEARCH_FAILURE_TEXT
    assert finding.used
    assert finding.query == "anything"
    assert finding.text is None


@pytest.mark.asyncio
async def test_web_search_tool_requires_query():
    finding = SearchFinding()
    tool = WebSearchTool(FakeTavilyClient(api_key="key"), finding)
    reply = await tool({})
    assert "query" in reply
    assert not finding.used
