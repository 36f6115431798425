"""Per-conversation debounce for bursts of inbound messages.

Customers often split one question over several WhatsApp messages. Instead of
answering each of them, the coordinator waits for a quiet period and hands the
accumulated message ids over as a single batch.

State per conversation is either absent (idle) or one :class:`PendingBatch`.
Every arrival restarts the full window. All mutations run on the event loop
thread without an ``await`` between read and write, which makes them atomic
per conversation while leaving other conversations unaffected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5.0


@dataclass
class PendingBatch:
    timer: asyncio.TimerHandle
    message_ids: list[str]
    last_message_at: float
    waiter: asyncio.Future


class DebounceCoordinator:
    """Coalesce consecutive messages of a conversation into one batch."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._pending: dict[str, PendingBatch] = {}
        self._clock = clock

    def schedule(
        self,
        conversation_id: str,
        message_id: str,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> asyncio.Future:
        """Add ``message_id`` to the conversation batch and (re)arm its timer.

        The returned future resolves with the ordered ids of the whole batch
        once ``window_seconds`` pass without another arrival. When a newer
        message supersedes this call, the future resolves with an empty list
        instead: the newest caller owns the batch.
        """

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        batch = self._pending.get(conversation_id)
        if batch is not None:
            batch.timer.cancel()
            message_ids = batch.message_ids
            if not batch.waiter.done():
                batch.waiter.set_result([])
        else:
            message_ids = []
        message_ids.append(message_id)
        timer = loop.call_later(
            max(window_seconds, 0.0), self._fire, conversation_id, waiter
        )
        self._pending[conversation_id] = PendingBatch(
            timer=timer,
            message_ids=message_ids,
            last_message_at=self._clock(),
            waiter=waiter,
        )
        logger.debug(
            "Debounce armed for conversation %s (%d message(s), %.1fs)",
            conversation_id,
            len(message_ids),
            window_seconds,
        )
        return waiter

    def _fire(self, conversation_id: str, waiter: asyncio.Future) -> None:
        batch = self._pending.get(conversation_id)
        if batch is None or batch.waiter is not waiter:
            return
        del self._pending[conversation_id]
        if not waiter.done():
            waiter.set_result(list(batch.message_ids))
        logger.debug(
            "Debounce fired for conversation %s with %d message(s)",
            conversation_id,
            len(batch.message_ids),
        )

    def cancel(self, conversation_id: str) -> bool:
        """Drop the pending batch without resolving its waiter.

        The outstanding future is cancelled, so awaiting callers see
        :class:`asyncio.CancelledError`. Returns ``False`` when nothing was
        pending.
        """

        batch = self._pending.pop(conversation_id, None)
        if batch is None:
            return False
        batch.timer.cancel()
        batch.waiter.cancel()
        logger.debug("Debounce cancelled for conversation %s", conversation_id)
        return True

    def is_pending(
        self, conversation_id: str, window_seconds: float = DEFAULT_WINDOW_SECONDS
    ) -> bool:
        batch = self._pending.get(conversation_id)
        if batch is None:
            return False
        return (self._clock() - batch.last_message_at) < window_seconds

    def pending_message_ids(self, conversation_id: str) -> list[str]:
        batch = self._pending.get(conversation_id)
        return list(batch.message_ids) if batch else []

    def pending_count(self) -> int:
        return len(self._pending)
