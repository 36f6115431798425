import asyncio
import json
import pathlib
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, List

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from support_inbox.agents.providers import ModelTurn
from support_inbox.agents.schemas import AgentConfig, ConversationContext, MessageRecord
from support_inbox.app_logging import init_logging
from support_inbox.channels.whatsapp import DeliveryResult


class ScriptedModel:
    """Model handle that replays queued turns or raises queued exceptions."""

    def __init__(self, outcomes: List[Any], *, repeat_last: bool = False):
        self._outcomes = list(outcomes)
        self._repeat_last = repeat_last
        self.calls: List[dict] = []

    def _next(self) -> Any:
        if not self._outcomes:
            raise AssertionError("no more model turns queued")
        if self._repeat_last and len(self._outcomes) == 1:
            return self._outcomes[0]
        return self._outcomes.pop(0)

    async def complete(self, messages, *, tools=None, temperature=None, max_tokens=None):
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "tools": tools,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        outcome = self._next()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeGateway:
    def __init__(self, handle: Any = None, error: Exception | None = None):
        self.handle = handle
        self.error = error
        self.resolved: List[str] = []

    def resolve(self, model_id: str, api_key_override: str | None = None):
        self.resolved.append(model_id)
        if self.error is not None:
            raise self.error
        return self.handle


class FakeClock:
    """Monotonic clock advanced only by :meth:`sleep`."""

    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class FakeSender:
    def __init__(self, result: DeliveryResult | None = None):
        self.result = result or DeliveryResult(success=True, message_id="wamid.OUT")
        self.sent: List[tuple[str, str]] = []

    def send_text(self, to: str, text: str, **kwargs: Any) -> DeliveryResult:
        self.sent.append((to, text))
        return self.result


def reply(message: str = "Olá! Como posso ajudar?", **fields: Any) -> ModelTurn:
    payload = {"message": message, "sentiment": "neutral", "confidence": 0.9}
    payload.update(fields)
    return ModelTurn(text=json.dumps(payload, ensure_ascii=False))


@pytest.fixture()
def agent() -> AgentConfig:
    return AgentConfig(
        id="agent-1",
        name="Atendente",
        system_prompt="Você atende clientes da Loja Exemplo.",
        model="gemini-2.5-flash",
        temperature=0.4,
        max_tokens=512,
        debounce_seconds=0.05,
        is_default=True,
    )


@pytest.fixture()
def conversation() -> ConversationContext:
    return ConversationContext(
        id="conv-1", phone="+5511999999999", contact_name="Maria", total_messages=3
    )


@pytest.fixture()
def make_messages():
    def _make(*contents: str, direction: str = "inbound") -> List[MessageRecord]:
        start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        return [
            MessageRecord(
                id=f"m{i + 1}",
                direction=direction,
                content=content,
                created_at=start + timedelta(seconds=i),
            )
            for i, content in enumerate(contents)
        ]

    return _make


@pytest.fixture()
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


def run(coro):
    return asyncio.run(coro)
