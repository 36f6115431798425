"""High-level inbox flow: inbound message to delivered reply."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from ..agents.debounce import DEFAULT_WINDOW_SECONDS, DebounceCoordinator
from ..agents.schemas import ConversationContext, MessageRecord, SupportAgentResult
from ..agents.service import CONTEXT_WINDOW, AgentNotFoundError, SupportAgentService
from ..channels.whatsapp import DeliveryResult, InboundMessage, WhatsAppSender
from .repository import InboxRepository

logger = logging.getLogger(__name__)


class ConversationNotFoundError(RuntimeError):
    """Raised when a debounced batch refers to an unknown conversation."""


@dataclass
class InboxOutcome:
    conversation_id: str
    message_ids: list[str]
    result: SupportAgentResult
    delivery: DeliveryResult
    handed_off: bool


class SupportInbox:
    """Coordinates debounce, agent runs, delivery and handoff marking.

    Runs for the same conversation are serialized with a per-conversation
    :class:`asyncio.Lock`, so two batches that fire close together cannot
    interleave their replies. The lock is process-local: deployments with
    several workers must route a conversation to a single worker.
    """

    def __init__(
        self,
        repository: InboxRepository,
        agent_service: SupportAgentService,
        sender: WhatsAppSender,
        *,
        debounce: Optional[DebounceCoordinator] = None,
    ) -> None:
        self._repository = repository
        self._agents = agent_service
        self._sender = sender
        self._debounce = debounce or DebounceCoordinator()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._window = DEFAULT_WINDOW_SECONDS

    @property
    def debounce(self) -> DebounceCoordinator:
        return self._debounce

    @property
    def repository(self) -> InboxRepository:
        return self._repository

    @property
    def agent_service(self) -> SupportAgentService:
        return self._agents

    # ------------------------------------------------------------------
    # Inbound

    async def receive(self, inbound: InboundMessage) -> tuple[ConversationContext, MessageRecord]:
        """Persist a webhook message and return its conversation and record.

        Also refreshes the debounce window from the default agent, so the
        following :meth:`schedule` call needs no lookup.
        """

        conversation = await asyncio.to_thread(
            self._repository.get_or_create_conversation,
            inbound.phone,
            inbound.contact_name,
        )
        record = await asyncio.to_thread(
            self._repository.add_message,
            conversation.id,
            "inbound",
            inbound.text,
            whatsapp_message_id=inbound.message_id,
        )
        agent = await asyncio.to_thread(self._repository.get_default_agent)
        if agent is not None:
            self._window = agent.debounce_seconds
        return conversation, record

    def schedule(
        self,
        conversation_id: str,
        message_id: str,
        debounce_seconds: Optional[float] = None,
    ) -> asyncio.Future:
        """Add ``message_id`` to the pending batch right away.

        Never awaits, so batches accumulate in call order and a later
        :meth:`close_conversation` always sees the message.
        """

        window = self._window if debounce_seconds is None else debounce_seconds
        return self._debounce.schedule(conversation_id, message_id, window)

    async def respond_when_quiet(
        self, conversation_id: str, waiter: asyncio.Future
    ) -> Optional[InboxOutcome]:
        """Wait for ``waiter`` and answer the batch it resolves to.

        Returns ``None`` when a newer message took over the batch or the
        conversation was closed while waiting.
        """

        try:
            message_ids = await asyncio.shield(waiter)
        except asyncio.CancelledError:
            if waiter.cancelled():
                logger.info("Pending batch for conversation %s was cancelled", conversation_id)
                return None
            raise
        if not message_ids:
            return None

        self._lock_users[conversation_id] += 1
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        try:
            async with lock:
                return await self._respond(conversation_id, message_ids)
        finally:
            self._lock_users[conversation_id] -= 1
            if self._lock_users[conversation_id] <= 0:
                del self._lock_users[conversation_id]
                self._locks.pop(conversation_id, None)

    async def on_inbound_message(
        self,
        conversation_id: str,
        message_id: str,
        debounce_seconds: Optional[float] = None,
    ) -> Optional[InboxOutcome]:
        """Debounce ``message_id`` and answer the batch once it fires."""

        waiter = self.schedule(conversation_id, message_id, debounce_seconds)
        return await self.respond_when_quiet(conversation_id, waiter)

    def close_conversation(self, conversation_id: str) -> None:
        """Drop any pending batch so no reply is produced for it."""

        self._debounce.cancel(conversation_id)

    # ------------------------------------------------------------------
    # Helpers

    async def _respond(self, conversation_id: str, message_ids: list[str]) -> InboxOutcome:
        conversation = await asyncio.to_thread(self._repository.get_conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        agent = await asyncio.to_thread(self._repository.get_default_agent)
        if agent is None:
            raise AgentNotFoundError("No active AI agent configured")
        self._window = agent.debounce_seconds
        messages = await asyncio.to_thread(
            self._repository.list_recent_messages, conversation_id, CONTEXT_WINDOW
        )

        result = await self._agents.process(
            agent, conversation, messages, message_ids=message_ids
        )
        decision = result.response

        delivery = await asyncio.to_thread(
            self._sender.send_text, conversation.phone, decision.message
        )
        if delivery.success:
            await asyncio.to_thread(
                self._repository.add_message,
                conversation_id,
                "outbound",
                decision.message,
                whatsapp_message_id=delivery.message_id,
            )
        else:
            logger.warning(
                "Reply for conversation %s was not delivered: %s",
                conversation_id,
                delivery.error,
            )

        if decision.should_handoff:
            await asyncio.to_thread(
                self._repository.mark_handoff,
                conversation_id,
                decision.handoff_reason,
                decision.handoff_summary,
            )
            logger.info(
                "Conversation %s handed off to a human: %s",
                conversation_id,
                decision.handoff_reason,
            )

        return InboxOutcome(
            conversation_id=conversation_id,
            message_ids=message_ids,
            result=result,
            delivery=delivery,
            handed_off=decision.should_handoff,
        )
