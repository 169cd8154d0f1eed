"""Shared schemas for LLM calls made while executing runs."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


class LLMMessage(BaseModel):
    role: str = "user"  # system, user, assistant
    content: str


class LLMRequest(BaseModel):
    """Input for one chain node call."""

    provider: str  # openai, anthropic, google, openrouter
    model: str
    messages: list[LLMMessage]
    params: dict[str, Any] = {}


class LLMResponse(BaseModel):
    """Unified response from any LLM provider."""

    content: str
    provider: str
    model_id: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    raw: dict[str, Any] = {}
    latency_ms: int = 0
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
