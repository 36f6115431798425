"""Audit log of support agent invocations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional, Protocol
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .schemas import InteractionLog

logger = logging.getLogger(__name__)


class InteractionLogRepository(Protocol):
    """Append-only storage for :class:`InteractionLog` records."""

    def insert(self, log: InteractionLog) -> str: ...


def _metadata(log: InteractionLog) -> dict[str, Any]:
    output = log.output
    return {
        "messageIds": list(log.message_ids),
        "sentiment": output.sentiment if output else None,
        "confidence": output.confidence if output else None,
        "shouldHandoff": output.should_handoff if output else None,
        "handoffReason": output.handoff_reason if output else None,
        "toolCalls": (
            [call.model_dump(mode="json") for call in log.tool_calls]
            if log.tool_calls
            else None
        ),
    }


class PostgresInteractionLogRepository:
    """Writes to the ``ai_agent_logs`` table."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

    def insert(self, log: InteractionLog) -> str:
        sources = (
            [source.model_dump() for source in log.sources] if log.sources else None
        )
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO ai_agent_logs
                    (conversation_id, ai_agent_id, input_message, output_message,
                     response_time_ms, model_used, sources_used, error_message, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    log.conversation_id,
                    log.agent_id,
                    log.input,
                    log.output.message if log.output else None,
                    log.latency_ms,
                    log.model,
                    Jsonb(sources) if sources is not None else None,
                    log.error,
                    Jsonb(_metadata(log)),
                ),
            )
            row = cur.fetchone()
        if not row:
            raise RuntimeError("ai_agent_logs insert returned no id")
        return str(row["id"])


class InMemoryInteractionLogRepository:
    def __init__(self) -> None:
        self.logs: dict[str, InteractionLog] = {}

    def insert(self, log: InteractionLog) -> str:
        log_id = uuid4().hex
        self.logs[log_id] = log.model_copy(deep=True)
        return log_id

    def for_conversation(self, conversation_id: str) -> list[InteractionLog]:
        return [log for log in self.logs.values() if log.conversation_id == conversation_id]


class InteractionLogWriter:
    """Best-effort persistence: a failed write never fails the agent run."""

    def __init__(self, repository: InteractionLogRepository) -> None:
        self._repository = repository

    async def persist(self, log: InteractionLog) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._repository.insert, log)
        except Exception:
            logger.exception(
                "Failed to persist AI log for conversation %s", log.conversation_id
            )
            return None
