"""Chat request/response schemas.

Wire names are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(min_length=1)
    model: str = Field(min_length=1)
    thread_id: str | None = Field(default=None, alias="threadId")
    enable_web_search: bool = Field(default=False, alias="enableWebSearch")
    web_search_context_size: Literal["low", "medium", "high"] = Field(
        default="medium", alias="webSearchContextSize"
    )
    enable_wiki_grounding: bool = Field(default=False, alias="enableWikiGrounding")
    stream: bool = False
    preferred_lang: str | None = Field(default=None, alias="preferredLang")


class Usage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_tokens: int = Field(alias="inputTokens")
    output_tokens: int = Field(alias="outputTokens")
    total_tokens: int = Field(alias="totalTokens")


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str
    id: str | None = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: AssistantMessage
    usage: Usage
    web_search_used: bool = Field(alias="webSearchUsed")
    model: str | None = None


class ErrorOut(BaseModel):
    error: str
    code: str
    details: dict | None = None


# ── Alternate responses ───────────────────────────────────────────────────────


class AddResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    model: str = Field(min_length=1)
    messages: list[ChatMessageIn] = Field(min_length=1)
    preferred_lang: str | None = Field(default=None, alias="preferredLang")


class SwitchResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    response_id: str = Field(alias="responseId")


class MessageResponseOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    message_id: str = Field(alias="messageId")
    model: str
    display_name: str | None = Field(default=None, alias="modelName")
    content: str
    tokens_used: int = Field(alias="tokensUsed")
    is_primary: bool = Field(alias="isPrimary")
    created_at: datetime = Field(alias="createdAt")
