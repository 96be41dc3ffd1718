import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class StructuredOutputError(ValueError):
    """The backend reply could not be parsed into the requested schema."""


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    execute: Callable[[Dict[str, Any]], Awaitable[str]]

    def definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)


StreamPart = Union[TextDelta, ToolCall, StepResult]


def parse_structured(raw: Optional[str], schema: Type[SchemaT]) -> SchemaT:
    text = (raw or "").strip()
    if not text:
        raise StructuredOutputError("empty structured output")
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return schema.model_validate_json(text)
    except ValidationError as exc:
        raise StructuredOutputError(f"structured output failed validation: {exc.error_count()} error(s)") from exc


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatClient:
    """OpenAI-compatible chat completions client shared by every model tier."""

    def __init__(self, max_output_tokens: Optional[int] = None, timeout: float = 120):
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if role == "assistant" and msg.get("tool_calls"):
                sanitized.append({"role": role, "content": content or None, "tool_calls": msg["tool_calls"]})
                continue
            if role == "tool":
                sanitized.append(
                    {"role": role, "tool_call_id": msg.get("tool_call_id"), "content": str(content or "")}
                )
                continue
            if content is None:
                continue
            cleaned_content: Any
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                cleaned_content = cleaned_items
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = self._extract_error_detail(response)
        raise httpx.HTTPStatusError(
            f"model backend returned HTTP {response.status_code}: {detail[:500]}",
            request=response.request,
            response=response,
        )

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        stream: bool,
        response_format: Optional[dict] = None,
        tools: Optional[List[Tool]] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not str(model or "").strip():
            raise ValueError("model is required")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": stream,
        }
        if response_format:
            payload["response_format"] = response_format
        if tools:
            payload["tools"] = [tool.definition() for tool in tools]
            payload["tool_choice"] = "auto"
        return payload

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        response_format: Optional[dict] = None,
    ) -> Dict[str, Any]:
        url = f"{base_url.rstrip('/')}/chat/completions"
        payload = self._build_payload(model, messages, temperature, max_tokens, False, response_format)
        resp = await self.client.post(url, json=payload, headers=self._headers(api_key))
        self._raise_for_status(resp)
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            if not message.get("content"):
                fallback = message.get("reasoning") or message.get("reasoning_content")
                if fallback:
                    message["content"] = fallback
                    choices[0]["message"] = message
        return data

    async def complete_text(self, *args: Any, **kwargs: Any) -> str:
        data = await self.chat_completion(*args, **kwargs)
        choices = data.get("choices") or [{}]
        return str((choices[0].get("message") or {}).get("content") or "")

    async def _stream_step(
        self,
        url: str,
        payload: Dict[str, Any],
        api_key: Optional[str],
        pending_calls: Dict[int, Dict[str, str]],
    ) -> AsyncGenerator[str, None]:
        async with self.client.stream("POST", url, json=payload, headers=self._headers(api_key)) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                self._raise_for_status(resp)
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line[len("data:"):].strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except ValueError:
                    continue
                choices = data.get("choices") or []
                if not choices:
                    continue
                delta_obj = choices[0].get("delta") or {}
                for call in delta_obj.get("tool_calls") or []:
                    slot = pending_calls.setdefault(int(call.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                    if call.get("id"):
                        slot["id"] = call["id"]
                    function = call.get("function") or {}
                    if function.get("name"):
                        slot["name"] = function["name"]
                    if function.get("arguments"):
                        slot["arguments"] += function["arguments"]
                delta = delta_obj.get("content")
                if delta:
                    yield delta

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        tools: Optional[List[Tool]] = None,
        max_steps: int = 1,
    ) -> AsyncGenerator[StreamPart, None]:
        """Stream one generation, running tool calls between steps.

        Yields text deltas as they arrive, each tool call once its arguments are
        complete, and a StepResult at the end of every step.
        """
        url = f"{base_url.rstrip('/')}/chat/completions"
        conversation = list(messages)
        tool_map = {tool.name: tool for tool in tools or []}
        steps = max(1, max_steps)
        for step in range(steps):
            offer_tools = list(tool_map.values()) if step < steps - 1 else None
            payload = self._build_payload(model, conversation, temperature, max_tokens, True, tools=offer_tools)
            pending_calls: Dict[int, Dict[str, str]] = {}
            step_text = ""
            async for delta in self._stream_step(url, payload, api_key, pending_calls):
                step_text += delta
                yield TextDelta(delta)
            calls = [
                ToolCall(id=slot["id"] or f"call_{step}_{idx}", name=slot["name"], arguments=_parse_arguments(slot["arguments"]))
                for idx, slot in sorted(pending_calls.items())
                if slot["name"]
            ]
            for call in calls:
                yield call
            yield StepResult(text=step_text, tool_calls=calls)
            if not calls:
                return
            conversation.append(
                {
                    "role": "assistant",
                    "content": step_text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in calls
                    ],
                }
            )
            for call in calls:
                tool = tool_map.get(call.name)
                if tool is None:
                    result = f"Unknown tool: {call.name}"
                else:
                    result = await tool.execute(call.arguments)
                conversation.append({"role": "tool", "tool_call_id": call.id, "content": result})

    async def generate_object(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        schema: Type[SchemaT],
        base_url: str,
        api_key: Optional[str] = None,
        schema_name: str = "result",
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> SchemaT:
        response_format = {
            "type": "json_schema",
            "json_schema": {"name": schema_name, "schema": schema.model_json_schema()},
        }
        data = await self.chat_completion(
            model=model,
            messages=messages,
            base_url=base_url,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        return parse_structured(content, schema)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
