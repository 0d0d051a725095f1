from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from aarogya.errors import MESSAGE_BY_KIND, ErrorKind

_ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "bot": "assistant",
    "ai": "assistant",
    "model": "assistant",
}


class ChatMessage(BaseModel):
    """One prior turn as sent by the dashboard."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def coerce_client_shape(cls, data: Any) -> Any:
        # The dashboard widgets send {sender, text} or {type, content}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        role = data.get("role") or data.get("sender") or data.get("type")
        if isinstance(role, str):
            data["role"] = _ROLE_ALIASES.get(role.strip().lower(), role)
        if "content" not in data and "text" in data:
            data["content"] = data["text"]
        return data


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    chat_history: list[ChatMessage] = Field(default_factory=list, alias="chatHistory")

    @field_validator("query", mode="before")
    @classmethod
    def query_not_blank(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(MESSAGE_BY_KIND[ErrorKind.INVALID_REQUEST])
        return value.strip()

    @field_validator("chat_history", mode="before")
    @classmethod
    def history_default(cls, value: Any) -> Any:
        return [] if value is None else value


class ErrorResponse(BaseModel):
    error: str
    details: str | list[dict] | None = None
