import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from docpilot.cli import iter_sse
from docpilot.config import AppSettings, EndpointConfig
from docpilot.main import create_app
from tests.fakes import FakeChatClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://lm.test/v1")
    settings = AppSettings(
        default_tier="basic",
        model_tiers={
            "basic": EndpointConfig(base_url=base_url, model_id="basic-model"),
            "gpt-4.1": EndpointConfig(base_url=base_url, model_id="gpt-model", api_key="sk-gpt"),
            "claude-sonnet-4-5": EndpointConfig(base_url=base_url, model_id="claude-model"),
        },
        tavily_api_key=None,
        search_poll_interval_s=0.01,
        search_poll_attempts=5,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def chat_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "currentText": "The quick brown fox jumps over the lazy dog.",
        "instructions": "Make it more vivid.",
        "documentId": "doc-1",
        "history": [],
    }
    payload.update(overrides)
    return payload


async def post_chat(client: AsyncClient, payload: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    res = await client.post("/api/chat", json=payload)
    assert res.status_code == 200, res.text
    assert res.headers["content-type"].startswith("text/event-stream")
    events = list(iter_sse(res.text.splitlines()))
    await drain_runs(client.app)  # type: ignore[attr-defined]
    return events


async def drain_runs(app) -> None:
    pending = list(app.state.run_tasks.values())
    if pending:
        await asyncio.gather(*pending)


def event_types(events: List[Tuple[str, Dict[str, Any]]]) -> List[str]:
    return [name for name, _ in events]


def first(events: List[Tuple[str, Dict[str, Any]]], name: str) -> Dict[str, Any]:
    for event_name, data in events:
        if event_name == name:
            return data
    raise AssertionError(f"no {name} event in {event_types(events)}")


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeChatClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeChatClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_client=llm_client, tavily_client=tavily_client, config_path=cfg_path)
        return app, cfg_path, llm_client, tavily_client

    return _factory


@pytest.fixture
def serve(app_factory):
    """Build an app from the given fakes/settings and yield a client bound to it."""

    @asynccontextmanager
    async def _serve(**kwargs):
        app, config_path, llm_client, tavily_client = app_factory(**kwargs)
        async with LifespanManager(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as http_client:
                http_client.app = app  # type: ignore[attr-defined]
                http_client.config_path = config_path  # type: ignore[attr-defined]
                http_client.fake_llm = llm_client  # type: ignore[attr-defined]
                http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
                yield http_client

    return _serve


@pytest.fixture
async def client(serve):
    async with serve() as http_client:
        yield http_client
