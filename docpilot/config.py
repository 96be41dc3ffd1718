import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DOCPILOT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASK = "********"


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str
    api_key: Optional[str] = None

    model_config = {"protected_namespaces": ()}


def _default_tiers() -> Dict[str, EndpointConfig]:
    return {
        "basic": EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="gemini-2.5-flash"),
        "gpt-4.1": EndpointConfig(base_url="https://api.openai.com/v1", model_id="gpt-4.1"),
        "claude-sonnet-4-5": EndpointConfig(
            base_url="https://api.anthropic.com/v1", model_id="claude-sonnet-4-5-20250929"
        ),
    }


class AppSettings(BaseModel):
    default_tier: str = "basic"
    model_tiers: Dict[str, EndpointConfig] = Field(default_factory=_default_tiers)
    # Falls back to the default tier backend when unset.
    context_endpoint: Optional[EndpointConfig] = None
    temperature: float = 0.7
    max_output_tokens: int = 4096

    tavily_api_key: Optional[str] = None
    search_depth: str = "basic"
    search_max_results: int = 5
    search_max_steps: int = 5
    search_poll_interval_s: float = 0.2
    search_poll_attempts: int = 15

    early_changes_min_chars: int = 1000
    early_changes_min_deltas: int = 20

    free_weekly_premium_uses: int = 10
    premium_monthly_premium_uses: int = 150

    database_path: str = "docpilot.db"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def premium_tiers(self) -> set:
        return {tier for tier in self.model_tiers if tier != self.default_tier}

    def default_endpoint(self) -> EndpointConfig:
        endpoint = self.model_tiers.get(self.default_tier)
        if endpoint is None:
            raise ValueError(f"default tier {self.default_tier!r} has no endpoint configured")
        return endpoint

    def resolve_context_endpoint(self) -> EndpointConfig:
        return self.context_endpoint or self.default_endpoint()

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("tavily_api_key"):
            data["tavily_api_key"] = MASK
        for endpoint in (data.get("model_tiers") or {}).values():
            if endpoint.get("api_key"):
                endpoint["api_key"] = MASK
        context = data.get("context_endpoint")
        if isinstance(context, dict) and context.get("api_key"):
            context["api_key"] = MASK
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "default_tier": os.getenv("DEFAULT_TIER"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_depth": os.getenv("SEARCH_DEPTH"),
        "search_max_results": os.getenv("SEARCH_MAX_RESULTS"),
        "search_poll_interval_s": os.getenv("SEARCH_POLL_INTERVAL_S"),
        "search_poll_attempts": os.getenv("SEARCH_POLL_ATTEMPTS"),
        "early_changes_min_chars": os.getenv("EARLY_CHANGES_MIN_CHARS"),
        "early_changes_min_deltas": os.getenv("EARLY_CHANGES_MIN_DELTAS"),
        "temperature": os.getenv("TEMPERATURE"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("search_max_results", "search_poll_attempts", "early_changes_min_chars", "early_changes_min_deltas", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("search_poll_interval_s", "temperature"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _apply_provider_keys(merged: Dict[str, Any]) -> None:
    """Fill missing per-tier API keys from the usual provider env vars."""
    tiers = merged.get("model_tiers")
    if tiers is None:
        tiers = {name: cfg.model_dump() for name, cfg in _default_tiers().items()}
    key_by_host = {
        "api.openai.com": os.getenv("OPENAI_API_KEY"),
        "api.anthropic.com": os.getenv("ANTHROPIC_API_KEY"),
        "generativelanguage.googleapis.com": os.getenv("GEMINI_API_KEY"),
    }
    for name, endpoint in tiers.items():
        if isinstance(endpoint, EndpointConfig):
            endpoint = endpoint.model_dump()
        if not isinstance(endpoint, dict) or endpoint.get("api_key"):
            tiers[name] = endpoint
            continue
        base_url = str(endpoint.get("base_url") or "")
        for host, key in key_by_host.items():
            if key and host in base_url:
                endpoint["api_key"] = key
                break
        tiers[name] = endpoint
    merged["model_tiers"] = tiers


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("tavily_api_key") and env_data.get("tavily_api_key"):
        merged["tavily_api_key"] = env_data["tavily_api_key"]
    _apply_provider_keys(merged)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
