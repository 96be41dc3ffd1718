"""Single run state machine shared by ask and edit modes.

A run resolves one backend, streams narration, and in edit mode produces a change
map. The change map call starts early (overlapping narration) only when search
is off and narration has grown past a threshold; otherwise it waits for the
narration to finish and, when the search tool ran, for its findings.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .config import AppSettings
from .context import NO_CONTEXT_UPDATE, ContextDistiller, ContextUpdate
from .db import Database
from .events import ASSISTANT_COMPLETE, CHANGES_FINAL, RESULT, EventStream
from .llm import ChatClient, StepResult, TextDelta, Tool, ToolCall
from .patches import APPEND_SENTINEL, build_change_map
from .prompts import FALLBACK_NARRATION, change_map_system, narration_system, user_prompt
from .quota import QuotaLedger
from .router import ModelSelection, search_allowed, select_model
from .schemas import ChangeMapPayload, ChatRequest
from .search import SEARCH_TOOL_NAME, SearchFinding, WebSearchTool
from .tavily import TavilyClient


logger = logging.getLogger("uvicorn.error")

ChangeMapResult = Tuple[Dict[str, str], List[str]]


def new_run_id() -> str:
    return uuid.uuid4().hex


class ChatRun:
    def __init__(
        self,
        request: ChatRequest,
        *,
        run_id: str,
        settings: AppSettings,
        db: Database,
        llm: ChatClient,
        tavily: TavilyClient,
        quota: QuotaLedger,
        distiller: ContextDistiller,
        events: EventStream,
    ):
        self.request = request
        self.run_id = run_id
        self.settings = settings
        self.db = db
        self.llm = llm
        self.tavily = tavily
        self.quota = quota
        self.distiller = distiller
        self.events = events
        self.edit_mode = request.action_mode == "edit"

        self.selection: Optional[ModelSelection] = None
        self.context: Optional[str] = None
        self.finding: Optional[SearchFinding] = None
        self.narration = ""
        self.is_searching = False
        self.changes: Optional[Dict[str, str]] = None
        self.early_started = False
        self._change_task: Optional[asyncio.Task] = None

    # Message assembly

    def _image_urls(self) -> List[str]:
        urls = []
        for image in self.request.images:
            url = image.data_url()
            if url:
                urls.append(url)
        return urls

    def _conversation(self) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": turn.role, "content": turn.content} for turn in self.request.history
        ]
        prompt = user_prompt(self.request.current_text, self.request.instructions)
        images = self._image_urls()
        if images:
            content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
            content.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    # Stages

    async def _setup_search(self) -> Optional[List[Tool]]:
        if not self.request.web_search_enabled:
            return None
        if not self.tavily.enabled:
            logger.info("Run %s web search requested but no search key is configured", self.run_id)
            return None
        if not await search_allowed(self.request.user_id, True, self.quota):
            logger.info("Run %s web search not permitted for this user", self.run_id)
            return None
        self.finding = SearchFinding()
        tool = WebSearchTool(
            self.tavily,
            self.finding,
            search_depth=self.settings.search_depth,
            max_results=self.settings.search_max_results,
            run_id=self.run_id,
        )
        return [tool.as_tool()]

    def _set_searching(self, value: bool) -> None:
        if self.is_searching == value:
            return
        self.is_searching = value
        self.events.search_status(value)

    def _should_start_early(self, delta_count: int) -> bool:
        if not self.edit_mode or self.early_started or self.finding is not None:
            return False
        return (
            len(self.narration) > self.settings.early_changes_min_chars
            or delta_count > self.settings.early_changes_min_deltas
        )

    async def _stream_narration(self, conversation: List[Dict[str, Any]], tools: Optional[List[Tool]]) -> str:
        assert self.selection is not None
        system = narration_system(
            self.request.action_mode,
            self.context,
            has_images=bool(self._image_urls()),
            search_enabled=bool(tools),
        )
        delta_count = 0
        async for part in self.llm.stream_chat(
            model=self.selection.model,
            messages=[{"role": "system", "content": system}, *conversation],
            base_url=self.selection.endpoint.base_url,
            api_key=self.selection.endpoint.api_key,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_output_tokens,
            tools=tools,
            max_steps=self.settings.search_max_steps if tools else 1,
        ):
            if isinstance(part, TextDelta):
                if not part.text:
                    continue
                self._set_searching(False)
                self.narration += part.text
                delta_count += 1
                self.events.delta(part.text)
                if self._should_start_early(delta_count):
                    self.early_started = True
                    logger.info(
                        "Run %s starting change map early (%d chars, %d deltas)",
                        self.run_id,
                        len(self.narration),
                        delta_count,
                    )
                    self._change_task = asyncio.create_task(self._generate_changes(conversation, self.narration))
            elif isinstance(part, ToolCall):
                if part.name == SEARCH_TOOL_NAME:
                    self._set_searching(True)
            elif isinstance(part, StepResult):
                if part.text:
                    self._set_searching(False)
        self._set_searching(False)
        if not self.narration.strip() and self.finding is not None and self.finding.used:
            self.narration = FALLBACK_NARRATION
            self.events.delta(FALLBACK_NARRATION)
        self.events.emit(ASSISTANT_COMPLETE, {"text": self.narration})
        return self.narration

    async def _generate_changes(self, conversation: List[Dict[str, Any]], narration: str) -> ChangeMapResult:
        assert self.selection is not None
        system = change_map_system(
            self.context,
            narration,
            self.finding.snapshot() if self.finding else None,
            has_images=bool(self._image_urls()),
            sentinel=APPEND_SENTINEL,
        )
        payload = await self.llm.generate_object(
            model=self.selection.model,
            messages=[{"role": "system", "content": system}, *conversation],
            schema=ChangeMapPayload,
            base_url=self.selection.endpoint.base_url,
            api_key=self.selection.endpoint.api_key,
            schema_name="change_map",
            max_tokens=self.settings.max_output_tokens,
        )
        return build_change_map(payload.changes, self.run_id)

    async def _resolve_changes(self, conversation: List[Dict[str, Any]]) -> ChangeMapResult:
        if self._change_task is not None:
            return await self._change_task
        if self.finding is not None and self.finding.used:
            timeout = self.settings.search_poll_interval_s * self.settings.search_poll_attempts
            await self.finding.wait_for_text(timeout)
        return await self._generate_changes(conversation, self.narration)

    async def _update_context(self, history: List[Dict[str, Any]]) -> ContextUpdate:
        self.events.status("Updating context...")
        try:
            return await self.distiller.distill(history, self.request.document_id)
        except Exception as exc:
            logger.warning("Run %s context update failed: %s", self.run_id, exc)
            return NO_CONTEXT_UPDATE

    async def _execute(self) -> None:
        request = self.request
        await self.db.insert_run(
            self.run_id, request.document_id, request.user_id, request.action_mode, request.model
        )
        self.events.status("Starting AI processing...")
        self.selection = await select_model(request.user_id, request.model, self.settings, self.quota)
        await self.db.update_run_model(self.run_id, self.selection.model)
        self.context = await self.db.fetch_document_context(request.document_id)
        tools = await self._setup_search()
        conversation = self._conversation()

        await self._stream_narration(conversation, tools)

        if self.edit_mode:
            self.changes, duplicates = await self._resolve_changes(conversation)
            payload: Dict[str, Any] = {"changes": self.changes}
            if duplicates:
                payload["duplicates"] = duplicates
            self.events.emit(CHANGES_FINAL, payload)

        history = [turn.model_dump() for turn in request.history]
        history.append({"role": "user", "content": user_prompt(request.current_text, request.instructions)})
        history.append({"role": "assistant", "content": self.narration})
        context_update = await self._update_context(history)

        remaining = self.selection.remaining_uses
        search_used = self.finding is not None and self.finding.used
        if search_used and request.user_id:
            try:
                remaining = await self.quota.record_premium_usage(request.user_id)
            except Exception as exc:
                logger.warning("Run %s could not record search usage: %s", self.run_id, exc)

        self.events.emit(
            RESULT,
            {
                "result": [self.narration, self.changes] if self.edit_mode else self.narration,
                "history": history,
                "remainingUses": remaining,
                "searchUsed": search_used,
                "searchQuery": self.finding.query if self.finding else None,
                "searchSources": list(self.finding.sources) if self.finding else [],
                "contextUpdated": context_update.context_updated,
                "contextChange": context_update.context_change,
                "actionMode": request.action_mode,
            },
        )
        self.events.complete()

    def _abandon_change_task(self) -> None:
        task = self._change_task
        if task is None:
            return
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            task.exception()

    async def run(self) -> None:
        """Drive the run to a terminal event.

        Failures become an ``error`` event; cancellation also emits one, is
        recorded as ``cancelled`` and then propagates.
        """
        status = "completed"
        error_text = None
        try:
            await self._execute()
        except asyncio.CancelledError:
            logger.info("Run %s cancelled", self.run_id)
            status = "cancelled"
            error_text = "Run cancelled"
            self._abandon_change_task()
            self.events.error(error_text)
            raise
        except Exception as exc:
            logger.exception("Run %s failed", self.run_id)
            status = "error"
            error_text = str(exc) or exc.__class__.__name__
            self._abandon_change_task()
            self.events.error(error_text)
        finally:
            try:
                await self.db.finalize_run(
                    self.run_id,
                    status,
                    narration=self.narration,
                    changes=self.changes,
                    search_used=self.finding is not None and self.finding.used,
                    error_text=error_text,
                )
            except Exception as exc:
                logger.warning("Run %s could not be finalized: %s", self.run_id, exc)

