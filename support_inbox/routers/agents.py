"""AI agent sandbox routes."""

from __future__ import annotations

import asyncio
import logging

import openai
from fastapi import APIRouter, HTTPException, Request

from ..agents import schemas
from ..agents.providers import ProviderConfigurationError
from ..conversations.service import SupportInbox

router = APIRouter(prefix="/api/ai-agents", tags=["agents"])

logger = logging.getLogger(__name__)


@router.post("/{agent_id}/test", response_model=schemas.AgentTestResponse)
async def test_agent(
    agent_id: str, payload: schemas.AgentTestRequest, request: Request
) -> schemas.AgentTestResponse:
    """Try an agent with a sample message before activating it."""

    inbox: SupportInbox = request.app.state.inbox
    agent = await asyncio.to_thread(inbox.repository.get_agent, agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    try:
        return await inbox.agent_service.run_test(agent, payload.message)
    except ProviderConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except openai.AuthenticationError as exc:
        raise HTTPException(
            status_code=401, detail="Authentication with the model provider failed"
        ) from exc
    except openai.RateLimitError as exc:
        raise HTTPException(
            status_code=429, detail="Rate limit exceeded, try again in a few seconds"
        ) from exc
    except (openai.OpenAIError, asyncio.TimeoutError) as exc:
        logger.warning("Agent %s test failed: %s", agent_id, exc)
        raise HTTPException(status_code=500, detail="Agent test failed") from exc
