"""Support agent orchestration: prompt, tool loop, retries and handoff."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, List, Optional, Protocol

from .knowledge import KnowledgeSearchTool
from .logs import InteractionLogWriter
from .prompts import DEFAULT_LANGUAGE, build_history, build_system_prompt
from .providers import ModelTurn, ToolCallRequest
from .responses import merge_parameters, parse_decision
from .schemas import (
    DEFAULT_MODEL_ID,
    AgentConfig,
    AgentDecision,
    AgentTestResponse,
    CallOptions,
    ConversationContext,
    InteractionLog,
    MessageRecord,
    SupportAgentResult,
    ToolCallTrace,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 1.0
MAX_STEPS = 5
CONTEXT_WINDOW = 10
ATTEMPT_TIMEOUT_SECONDS = 30.0
HANDOFF_EXCERPT_CHARS = 200

SANDBOX_CONVERSATION = ConversationContext(id="sandbox", phone="+0000000000")

HANDOFF_MESSAGE = (
    "Desculpe, estou com dificuldades técnicas no momento. "
    "Vou transferir você para um de nossos atendentes."
)


class AgentNotFoundError(RuntimeError):
    """Raised when an agent could not be located."""


class EmptyModelResponseError(RuntimeError):
    """Raised when the model finishes an attempt without any reply text."""


class ModelClient(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelTurn: ...


class ModelGateway(Protocol):
    def resolve(self, model_id: str, api_key_override: str | None = None) -> ModelClient: ...


def forced_handoff_decision(
    last_error: str | None, last_input: str, attempts: int = MAX_ATTEMPTS
) -> AgentDecision:
    """Decision used once every attempt failed: apologise and hand off."""

    return AgentDecision(
        message=HANDOFF_MESSAGE,
        sentiment="neutral",
        confidence=0,
        should_handoff=True,
        handoff_reason=f"Erro técnico após {attempts} tentativas: {last_error or 'erro desconhecido'}",
        handoff_summary=(
            "Cliente estava conversando quando ocorreu erro técnico. "
            f'Última mensagem: "{last_input[:HANDOFF_EXCERPT_CHARS]}"'
        ),
    )


class SupportAgentService:
    """Turn a conversation snapshot into exactly one :class:`AgentDecision`.

    Each attempt runs an explicit tool loop capped at ``max_steps`` model
    calls. A failed attempt is retried once after a flat one second delay;
    when both fail, a forced handoff decision is returned with
    ``success=False``. Configuration errors raised while resolving the model
    are not retried and propagate to the caller.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        log_writer: InteractionLogWriter,
        *,
        knowledge_tool: Optional[KnowledgeSearchTool] = None,
        language: str = DEFAULT_LANGUAGE,
        max_steps: int = MAX_STEPS,
        attempt_timeout: float = ATTEMPT_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._log_writer = log_writer
        self._knowledge_tool = knowledge_tool or KnowledgeSearchTool()
        self._language = language
        self._max_steps = max_steps
        self._attempt_timeout = attempt_timeout
        self._sleep = sleep
        self._clock = clock

    @property
    def gateway(self) -> ModelGateway:
        return self._gateway

    @property
    def knowledge_tool(self) -> KnowledgeSearchTool:
        return self._knowledge_tool

    # ------------------------------------------------------------------
    # Orchestration

    async def process(
        self,
        agent: AgentConfig,
        conversation: ConversationContext,
        messages: Sequence[MessageRecord],
        call_options: Optional[CallOptions] = None,
        message_ids: Optional[Sequence[str]] = None,
    ) -> SupportAgentResult:
        start = self._clock()
        window = list(messages)[-CONTEXT_WINDOW:]
        last_inbound = next(
            (m for m in reversed(window) if m.direction == "inbound"), None
        )
        last_input = last_inbound.content if last_inbound else ""
        covered_ids = list(message_ids) if message_ids else [m.id for m in window]
        params = merge_parameters(agent, call_options)
        system_prompt = build_system_prompt(agent, conversation, self._language)
        history = build_history(window)
        model_id = agent.model or DEFAULT_MODEL_ID

        handle = await asyncio.to_thread(self._gateway.resolve, model_id)

        last_error: Optional[str] = None
        trace: List[ToolCallTrace] = []
        for attempt in range(1, MAX_ATTEMPTS + 1):
            trace = []
            try:
                text = await asyncio.wait_for(
                    self._run_tool_loop(handle, agent.id, system_prompt, history, params, trace),
                    timeout=self._attempt_timeout,
                )
                decision = parse_decision(text)
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Support agent attempt %d/%d failed for conversation %s: %s",
                    attempt,
                    MAX_ATTEMPTS,
                    conversation.id,
                    last_error,
                )
                if attempt < MAX_ATTEMPTS:
                    await self._sleep(RETRY_DELAY_SECONDS)
                continue

            latency_ms = self._elapsed_ms(start)
            log_id = await self._log_writer.persist(
                InteractionLog(
                    conversation_id=conversation.id,
                    agent_id=agent.id,
                    message_ids=covered_ids,
                    input=last_input,
                    output=decision,
                    model=model_id,
                    latency_ms=latency_ms,
                    tool_calls=trace or None,
                    sources=decision.sources,
                )
            )
            return SupportAgentResult(
                success=True, response=decision, latency_ms=latency_ms, log_id=log_id
            )

        decision = forced_handoff_decision(last_error, last_input)
        latency_ms = self._elapsed_ms(start)
        logger.error(
            "Support agent gave up on conversation %s after %d attempts: %s",
            conversation.id,
            MAX_ATTEMPTS,
            last_error,
        )
        log_id = await self._log_writer.persist(
            InteractionLog(
                conversation_id=conversation.id,
                agent_id=agent.id,
                message_ids=covered_ids,
                input=last_input,
                output=decision,
                model=model_id,
                latency_ms=latency_ms,
                error=last_error,
                tool_calls=trace or None,
            )
        )
        return SupportAgentResult(
            success=False,
            response=decision,
            error=last_error or "Max retries exceeded",
            latency_ms=latency_ms,
            log_id=log_id,
        )

    async def _run_tool_loop(
        self,
        handle: ModelClient,
        agent_id: str,
        system_prompt: str,
        history: list[dict[str, Any]],
        params: dict[str, Any],
        trace: List[ToolCallTrace],
    ) -> str:
        """Call the model until it answers without tools or the budget runs out."""

        conversation: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            *history,
        ]
        tools = [self._knowledge_tool.definition()]
        text = ""
        for step in range(1, self._max_steps + 1):
            turn = await handle.complete(
                conversation,
                tools=tools,
                temperature=params.get("temperature"),
                max_tokens=params.get("max_tokens"),
            )
            text = turn.text
            if not turn.tool_calls:
                break
            if step == self._max_steps:
                trace.extend(
                    ToolCallTrace(name=call.name, args=call.arguments)
                    for call in turn.tool_calls
                )
                logger.info("Step budget of %d exhausted with pending tool calls", self._max_steps)
                break
            conversation.append(turn.as_message())
            for call in turn.tool_calls:
                result = self._execute_tool(agent_id, call)
                trace.append(ToolCallTrace(name=call.name, args=call.arguments, result=result))
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result, ensure_ascii=False),
                    }
                )
        if not text.strip():
            raise EmptyModelResponseError("Model returned an empty response")
        return text

    def _execute_tool(self, agent_id: str, call: ToolCallRequest) -> dict[str, Any]:
        if call.name != self._knowledge_tool.name:
            return {"error": f"Unknown tool '{call.name}'"}
        return self._knowledge_tool.run(agent_id, call.arguments)

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

    # ------------------------------------------------------------------
    # Sandbox testing

    async def run_test(self, agent: AgentConfig, message: str) -> AgentTestResponse:
        """Send a single sample message to the agent, without tools or logging."""

        model_id = agent.model or DEFAULT_MODEL_ID
        handle = await asyncio.to_thread(self._gateway.resolve, model_id)
        system_prompt = build_system_prompt(agent, SANDBOX_CONVERSATION, self._language)
        start = self._clock()
        turn = await asyncio.wait_for(
            handle.complete(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": message},
                ],
                temperature=agent.temperature,
                max_tokens=agent.max_tokens,
            ),
            timeout=self._attempt_timeout,
        )
        return AgentTestResponse(
            response=turn.text,
            latency_ms=self._elapsed_ms(start),
            model=model_id,
            usage=turn.usage,
        )
