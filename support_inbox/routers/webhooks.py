"""WhatsApp webhook routes."""

from __future__ import annotations

import asyncio
import json
import logging
import os

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from ..channels.whatsapp import parse_incoming, verify_signature
from ..conversations.service import SupportInbox

router = APIRouter(tags=["webhooks"])

logger = logging.getLogger(__name__)


def _get_inbox(request: Request) -> SupportInbox:
    return request.app.state.inbox


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Inbox processing failed", exc_info=exc)


def _spawn(request: Request, coro) -> asyncio.Task:
    """Run ``coro`` detached from the request, keeping a strong reference."""

    tasks: set[asyncio.Task] = request.app.state.tasks
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    task.add_done_callback(_log_task_failure)
    return task


@router.get("/api/webhooks/whatsapp")
async def verify_webhook(request: Request) -> Response:
    """Answer Meta's subscription handshake."""

    params = request.query_params
    expected = os.getenv("WHATSAPP_VERIFY_TOKEN")
    if (
        params.get("hub.mode") == "subscribe"
        and expected
        and params.get("hub.verify_token") == expected
    ):
        return PlainTextResponse(params.get("hub.challenge", ""))
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/api/webhooks/whatsapp")
async def ingest_webhook(request: Request) -> dict[str, int]:
    body_bytes = await request.body()
    if not verify_signature(body_bytes, request.headers, os.getenv("WHATSAPP_APP_SECRET")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc

    inbox = _get_inbox(request)
    received = 0
    for inbound in parse_incoming(payload):
        if not inbound.text.strip():
            logger.info("Ignoring %s message without text", inbound.message_type)
            continue
        conversation, record = await inbox.receive(inbound)
        waiter = inbox.schedule(conversation.id, record.id)
        _spawn(request, inbox.respond_when_quiet(conversation.id, waiter))
        received += 1
    return {"received": received}
