from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


ActionMode = Literal["ask", "edit"]
TurnRole = Literal["user", "assistant"]


def _parts_text(parts: Any) -> str:
    if isinstance(parts, str):
        return parts
    if isinstance(parts, list):
        return "".join(p if isinstance(p, str) else str((p or {}).get("text") or "") for p in parts)
    if isinstance(parts, dict):
        return str(parts.get("text") or "")
    return "" if parts is None else str(parts)


class Turn(BaseModel):
    role: TurnRole
    content: str

    @model_validator(mode="before")
    @classmethod
    def normalize_turn(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("role") == "model":
            data["role"] = "assistant"
        if "content" not in data and "parts" in data:
            data["content"] = _parts_text(data.pop("parts"))
        return data


class Attachment(BaseModel):
    url: Optional[str] = None
    base64: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def accept_bare_url(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"url": data}
        return data

    def data_url(self) -> Optional[str]:
        if self.url:
            return self.url
        if self.base64 and self.mime_type:
            return f"data:{self.mime_type};base64,{self.base64}"
        return None


class ChatRequest(BaseModel):
    current_text: str = Field(alias="currentText")
    instructions: str
    history: List[Turn] = Field(default_factory=list)
    user_id: Optional[str] = Field(default=None, alias="userId")
    document_id: str = Field(alias="documentId")
    model: str = "basic"
    action_mode: ActionMode = Field(default="edit", alias="actionMode")
    images: List[Attachment] = Field(default_factory=list)
    web_search_enabled: bool = Field(default=False, alias="webSearchEnabled")

    model_config = {"populate_by_name": True, "frozen": True, "protected_namespaces": ()}

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("instructions") and isinstance(data.get("description"), str):
            data["instructions"] = data.pop("description")
        if data.get("history") is None:
            data.pop("history", None)
        if data.get("images") is None:
            data.pop("images", None)
        if data.get("model") in (None, ""):
            data.pop("model", None)
        mode = data.get("actionMode", data.get("action_mode"))
        if mode is None or mode == "":
            data.pop("actionMode", None)
            data.pop("action_mode", None)
        elif isinstance(mode, str):
            data["actionMode"] = mode.strip().lower()
            data.pop("action_mode", None)
        return data

    @field_validator("instructions")
    @classmethod
    def instructions_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("instructions must not be blank")
        return value

    @field_validator("document_id")
    @classmethod
    def document_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("documentId must not be blank")
        return value


class ChangeEntry(BaseModel):
    original: str = Field(description="The original text to replace, or '!ADD_TO_END!' to append new content")
    replacement: str = Field(description="The new text to replace the original with")


class ChangeMapPayload(BaseModel):
    changes: List[ChangeEntry] = Field(description="An array of text replacements to apply to the document")


class ContextUpdateRequest(BaseModel):
    history: List[Turn]
    document_id: str = Field(alias="documentId")

    model_config = {"populate_by_name": True}


class DocumentCreate(BaseModel):
    id: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    title: str = ""
    content: str = ""
    context: Optional[str] = None

    model_config = {"populate_by_name": True}


class ContextBody(BaseModel):
    context: str


class UsageStats(BaseModel):
    tier: str
    used: int
    limit: int
    remaining: int
    resets_at: Optional[str] = Field(default=None, alias="resetsAt")

    model_config = {"populate_by_name": True}

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class UserUpsert(BaseModel):
    id: str
    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")
    period_end: Optional[str] = Field(default=None, alias="periodEnd")

    model_config = {"populate_by_name": True}
