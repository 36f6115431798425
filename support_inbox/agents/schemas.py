"""Pydantic schemas shared by the support agent pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Sentiment = Literal["positive", "neutral", "negative", "frustrated"]
Direction = Literal["inbound", "outbound"]

DEFAULT_MODEL_ID = "gemini-2.5-flash"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentConfig(BaseModel):
    """Snapshot of an AI agent row, read once per invocation."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = "Support agent"
    system_prompt: str
    model: str = DEFAULT_MODEL_ID
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(1024, ge=1, le=8192)
    debounce_seconds: float = Field(5.0, ge=0, le=30)
    is_active: bool = True
    is_default: bool = False


class ConversationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    phone: str
    contact_name: str | None = None
    priority: str = "normal"
    total_messages: int = 0


class MessageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    direction: Direction
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class KnowledgeSource(BaseModel):
    title: str
    content: str = ""


class AgentDecision(BaseModel):
    """Structured reply produced by one agent run.

    Models are asked to answer in camelCase JSON, so both the aliases and the
    Python field names are accepted on input.
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    message: str = Field(..., min_length=1)
    sentiment: Sentiment
    confidence: float = Field(..., ge=0, le=1)
    should_handoff: bool = Field(False, alias="shouldHandoff")
    handoff_reason: str | None = Field(None, alias="handoffReason")
    handoff_summary: str | None = Field(None, alias="handoffSummary")
    sources: list[KnowledgeSource] | None = None


class CallOptions(BaseModel):
    """Per-call overrides for sampling parameters."""

    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, ge=1, le=8192)


class ToolCallTrace(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class InteractionLog(BaseModel):
    """Append-only audit record of one orchestrator run."""

    conversation_id: str
    agent_id: str
    message_ids: list[str] = Field(default_factory=list)
    input: str = ""
    output: AgentDecision | None = None
    model: str | None = None
    latency_ms: int = 0
    error: str | None = None
    tool_calls: list[ToolCallTrace] | None = None
    sources: list[KnowledgeSource] | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class SupportAgentResult(BaseModel):
    success: bool
    response: AgentDecision
    error: str | None = None
    latency_ms: int
    log_id: str | None = None


class AgentTestRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)


class AgentTestResponse(BaseModel):
    response: str
    latency_ms: int
    model: str
    usage: dict[str, int] | None = None
