import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import AppSettings
from .db import Database
from .llm import ChatClient
from .prompts import context_update_prompt
from .schemas import Turn


logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ContextUpdate:
    context_updated: bool
    context_change: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"contextUpdated": self.context_updated, "contextChange": self.context_change}


NO_CONTEXT_UPDATE = ContextUpdate(context_updated=False, context_change=None)


def history_payload(history: Sequence[Union[Turn, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    payload: List[Dict[str, Any]] = []
    for turn in history:
        if isinstance(turn, Turn):
            payload.append(turn.model_dump())
        else:
            payload.append(dict(turn))
    return payload


class ContextDistiller:
    """Rewrites a document's stored context from its latest conversation."""

    def __init__(self, db: Database, llm: ChatClient, settings: AppSettings):
        self.db = db
        self.llm = llm
        self.settings = settings

    async def distill(self, history: Sequence[Union[Turn, Dict[str, Any]]], document_id: str) -> ContextUpdate:
        document = await self.db.get_document(document_id)
        if document is None:
            raise LookupError(f"document {document_id} not found")
        current = document.get("context")
        endpoint = self.settings.resolve_context_endpoint()
        prompt = context_update_prompt(history_payload(history), current)
        updated = await self.llm.complete_text(
            model=endpoint.model_id,
            messages=[{"role": "user", "content": prompt}],
            base_url=endpoint.base_url,
            api_key=endpoint.api_key,
            temperature=0.3,
            max_tokens=self.settings.max_output_tokens,
        )
        updated = updated.strip()
        if not updated:
            logger.warning("Context distillation for document %s returned no text", document_id)
            return NO_CONTEXT_UPDATE
        await self.db.update_document_context(document_id, updated)
        if updated == (current or "").strip():
            return ContextUpdate(context_updated=True, context_change=None)
        return ContextUpdate(context_updated=True, context_change=updated)
