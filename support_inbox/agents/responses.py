"""Response parameters and decision parsing for agent executions."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .schemas import AgentConfig, AgentDecision, CallOptions

# Greedy on purpose: models wrap JSON in prose or code fences, and nested
# objects (``sources``) must stay inside the match.
_JSON_FRAGMENT = re.compile(r"\{[\s\S]*\}")

MALFORMED_JSON_CONFIDENCE = 0.7
PLAIN_TEXT_CONFIDENCE = 0.5


def merge_parameters(agent: AgentConfig, overrides: CallOptions | None = None) -> dict[str, Any]:
    """Return the sampling parameters for a call, overrides winning over the agent."""

    params: dict[str, Any] = {
        "temperature": agent.temperature,
        "max_tokens": agent.max_tokens,
    }
    if overrides:
        for key, value in overrides.model_dump(exclude_none=True).items():
            params[key] = value
    return params


@dataclass(frozen=True)
class ParseResult:
    """Outcome of the structured parsing stage."""

    decision: AgentDecision | None
    fragment_found: bool
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.decision is not None


def extract_json_fragment(text: str) -> str | None:
    match = _JSON_FRAGMENT.search(text or "")
    return match.group(0) if match else None


def parse_structured(text: str) -> ParseResult:
    """Extract the JSON object embedded in ``text`` and validate it."""

    fragment = extract_json_fragment(text)
    if fragment is None:
        return ParseResult(decision=None, fragment_found=False, error="no JSON object found")
    try:
        payload = json.loads(fragment)
    except ValueError as exc:
        return ParseResult(decision=None, fragment_found=True, error=f"invalid JSON: {exc}")
    if not isinstance(payload, dict):
        return ParseResult(decision=None, fragment_found=True, error="JSON is not an object")
    try:
        decision = AgentDecision.model_validate(payload)
    except ValidationError as exc:
        return ParseResult(
            decision=None,
            fragment_found=True,
            error=f"schema mismatch: {exc.error_count()} error(s)",
        )
    return ParseResult(decision=decision, fragment_found=True)


def fallback_decision(text: str, fragment_found: bool) -> AgentDecision:
    """Wrap raw model text as a neutral reply.

    A JSON-looking fragment that failed validation keeps more confidence
    (0.7) than text with no structure at all (0.5).
    """

    confidence = MALFORMED_JSON_CONFIDENCE if fragment_found else PLAIN_TEXT_CONFIDENCE
    return AgentDecision(
        message=text.strip(),
        sentiment="neutral",
        confidence=confidence,
        should_handoff=False,
    )


def parse_decision(text: str) -> AgentDecision:
    """Parse model output, falling back to plain-text wrapping."""

    result = parse_structured(text)
    if result.decision is not None:
        return result.decision
    return fallback_decision(text, result.fragment_found)
