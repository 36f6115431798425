"""Database repository for inbox conversations, messages and agents."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row

from ..agents.schemas import (
    DEFAULT_MODEL_ID,
    AgentConfig,
    ConversationContext,
    Direction,
    MessageRecord,
)


class InboxRepository(Protocol):
    """Reads and writes the support pipeline needs from the inbox store."""

    def get_conversation(self, conversation_id: str) -> Optional[ConversationContext]: ...

    def get_or_create_conversation(
        self, phone: str, contact_name: Optional[str] = None
    ) -> ConversationContext: ...

    def list_recent_messages(self, conversation_id: str, limit: int = 10) -> List[MessageRecord]: ...

    def add_message(
        self,
        conversation_id: str,
        direction: Direction,
        content: str,
        *,
        whatsapp_message_id: Optional[str] = None,
    ) -> MessageRecord: ...

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]: ...

    def get_default_agent(self) -> Optional[AgentConfig]: ...

    def mark_handoff(
        self, conversation_id: str, reason: Optional[str], summary: Optional[str]
    ) -> None: ...


def _row_to_agent(row: Dict[str, Any]) -> AgentConfig:
    return AgentConfig(
        id=str(row["id"]),
        name=row.get("name") or "Support agent",
        system_prompt=row["system_prompt"],
        model=row.get("model") or DEFAULT_MODEL_ID,
        temperature=row["temperature"] if row.get("temperature") is not None else 0.7,
        max_tokens=row.get("max_tokens") or 1024,
        debounce_seconds=(row.get("debounce_ms") or 5000) / 1000,
        is_active=bool(row.get("is_active", True)),
        is_default=bool(row.get("is_default", False)),
    )


def _row_to_conversation(row: Dict[str, Any]) -> ConversationContext:
    return ConversationContext(
        id=str(row["id"]),
        phone=row["phone"],
        contact_name=row.get("contact_name"),
        priority=row.get("priority") or "normal",
        total_messages=row.get("total_messages") or 0,
    )


def _row_to_message(row: Dict[str, Any]) -> MessageRecord:
    return MessageRecord(
        id=str(row["id"]),
        direction=row["direction"],
        content=row.get("content") or "",
        created_at=row["created_at"],
    )


class PostgresInboxRepository:
    """PostgreSQL implementation of :class:`InboxRepository`."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

    # Conversations -----------------------------------------------------------
    def get_conversation(self, conversation_id: str) -> Optional[ConversationContext]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, phone, contact_name, priority, total_messages
                FROM inbox_conversations
                WHERE id = %s
                """,
                (conversation_id,),
            )
            row = cur.fetchone()
        return _row_to_conversation(row) if row else None

    def get_or_create_conversation(
        self, phone: str, contact_name: Optional[str] = None
    ) -> ConversationContext:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, phone, contact_name, priority, total_messages
                FROM inbox_conversations
                WHERE phone = %s AND status = 'open'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (phone,),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    """
                    INSERT INTO inbox_conversations (phone, contact_name, status, mode)
                    VALUES (%s, %s, 'open', 'bot')
                    RETURNING id, phone, contact_name, priority, total_messages
                    """,
                    (phone, contact_name),
                )
                row = cur.fetchone()
        return _row_to_conversation(row)

    def mark_handoff(
        self, conversation_id: str, reason: Optional[str], summary: Optional[str]
    ) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE inbox_conversations
                SET mode = 'human', handoff_reason = %s, handoff_summary = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (reason, summary, conversation_id),
            )

    # Messages ----------------------------------------------------------------
    def list_recent_messages(self, conversation_id: str, limit: int = 10) -> List[MessageRecord]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, direction, content, created_at
                FROM inbox_messages
                WHERE conversation_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (conversation_id, limit),
            )
            rows = cur.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    def add_message(
        self,
        conversation_id: str,
        direction: Direction,
        content: str,
        *,
        whatsapp_message_id: Optional[str] = None,
    ) -> MessageRecord:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO inbox_messages (conversation_id, direction, content, whatsapp_message_id)
                VALUES (%s, %s, %s, %s)
                RETURNING id, direction, content, created_at
                """,
                (conversation_id, direction, content, whatsapp_message_id),
            )
            row = cur.fetchone()
            cur.execute(
                """
                UPDATE inbox_conversations
                SET total_messages = total_messages + 1, last_message_at = now()
                WHERE id = %s
                """,
                (conversation_id,),
            )
        return _row_to_message(row)

    # Agents ------------------------------------------------------------------
    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, name, system_prompt, model, temperature, max_tokens,
                       debounce_ms, is_active, is_default
                FROM ai_agents
                WHERE id = %s
                """,
                (agent_id,),
            )
            row = cur.fetchone()
        return _row_to_agent(row) if row else None

    def get_default_agent(self) -> Optional[AgentConfig]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, name, system_prompt, model, temperature, max_tokens,
                       debounce_ms, is_active, is_default
                FROM ai_agents
                WHERE is_active
                ORDER BY is_default DESC, created_at
                LIMIT 1
                """
            )
            row = cur.fetchone()
        return _row_to_agent(row) if row else None


# ---------------------------------------------------------------------------
# In-memory repository (useful for testing and sandbox environments)


class InMemoryInboxRepository:
    def __init__(self) -> None:
        self.conversations: Dict[str, ConversationContext] = {}
        self.messages: Dict[str, List[MessageRecord]] = {}
        self.agents: Dict[str, AgentConfig] = {}
        self.handoffs: Dict[str, Dict[str, Optional[str]]] = {}
        self.external_ids: Dict[str, str] = {}

    def add_agent(self, agent: AgentConfig) -> AgentConfig:
        self.agents[agent.id] = agent
        return agent

    def add_conversation(self, conversation: ConversationContext) -> ConversationContext:
        self.conversations[conversation.id] = conversation
        self.messages.setdefault(conversation.id, [])
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[ConversationContext]:
        return self.conversations.get(conversation_id)

    def get_or_create_conversation(
        self, phone: str, contact_name: Optional[str] = None
    ) -> ConversationContext:
        for conversation in self.conversations.values():
            if conversation.phone == phone:
                return conversation
        return self.add_conversation(
            ConversationContext(id=uuid4().hex, phone=phone, contact_name=contact_name)
        )

    def list_recent_messages(self, conversation_id: str, limit: int = 10) -> List[MessageRecord]:
        return list(self.messages.get(conversation_id, []))[-limit:]

    def add_message(
        self,
        conversation_id: str,
        direction: Direction,
        content: str,
        *,
        whatsapp_message_id: Optional[str] = None,
    ) -> MessageRecord:
        record = MessageRecord(
            id=uuid4().hex,
            direction=direction,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        self.messages.setdefault(conversation_id, []).append(record)
        if whatsapp_message_id:
            self.external_ids[record.id] = whatsapp_message_id
        conversation = self.conversations.get(conversation_id)
        if conversation is not None:
            self.conversations[conversation_id] = conversation.model_copy(
                update={"total_messages": conversation.total_messages + 1}
            )
        return record

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        return self.agents.get(agent_id)

    def get_default_agent(self) -> Optional[AgentConfig]:
        active = [agent for agent in self.agents.values() if agent.is_active]
        active.sort(key=lambda agent: not agent.is_default)
        return active[0] if active else None

    def mark_handoff(
        self, conversation_id: str, reason: Optional[str], summary: Optional[str]
    ) -> None:
        self.handoffs[conversation_id] = {"reason": reason, "summary": summary}
