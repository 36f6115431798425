"""Knowledge-base search tool offered to the support agent.

The tool is always advertised to the model. Agents without a knowledge base
get an empty result set with an explanatory message so the model can carry on
answering from the conversation alone.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from .schemas import KnowledgeSource

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "searchKnowledgeBase"
NOT_CONFIGURED_MESSAGE = "Base de conhecimento não configurada"
NO_RESULTS_MESSAGE = "Nenhum resultado encontrado"


class KnowledgeBase(Protocol):
    def search(self, agent_id: str, query: str, limit: int = 3) -> list[KnowledgeSource]: ...


def _tokenize(text: str) -> list[str]:
    """Lowercase and keep only alpha-numerics."""
    return [
        t.lower()
        for t in "".join(c if c.isalnum() else " " for c in text).split()
        if t
    ]


class InMemoryKnowledgeBase:
    """Keyword-overlap search over documents registered per agent.

    Reference implementation of :class:`KnowledgeBase`; pass one to
    ``build_inbox(knowledge_base=...)`` for small, static FAQ sets.
    """

    def __init__(self, documents: Mapping[str, Iterable[KnowledgeSource]] | None = None) -> None:
        self._documents: dict[str, list[KnowledgeSource]] = {
            agent_id: list(docs) for agent_id, docs in (documents or {}).items()
        }

    def add(self, agent_id: str, source: KnowledgeSource) -> None:
        self._documents.setdefault(agent_id, []).append(source)

    def search(self, agent_id: str, query: str, limit: int = 3) -> list[KnowledgeSource]:
        terms = set(_tokenize(query))
        if not terms:
            return []
        scored = []
        for doc in self._documents.get(agent_id, []):
            tokens = _tokenize(f"{doc.title} {doc.content}")
            score = sum(1 for token in tokens if token in terms)
            if score:
                scored.append((score, doc))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [doc for _, doc in scored[:limit]]


def tool_definition() -> dict[str, Any]:
    """Function-calling schema for the search tool."""

    return {
        "type": "function",
        "function": {
            "name": SEARCH_TOOL_NAME,
            "description": "Busca informações na base de conhecimento do negócio",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Termo de busca"},
                },
                "required": ["query"],
            },
        },
    }


class KnowledgeSearchTool:
    """Executes ``searchKnowledgeBase`` calls for one agent."""

    name = SEARCH_TOOL_NAME

    def __init__(self, knowledge_base: KnowledgeBase | None = None) -> None:
        self._knowledge_base = knowledge_base

    def definition(self) -> dict[str, Any]:
        return tool_definition()

    def run(self, agent_id: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        query = str(arguments.get("query") or "").strip()
        logger.info("Knowledge base search for agent %s: %r", agent_id, query)
        if self._knowledge_base is None:
            return {"results": [], "message": NOT_CONFIGURED_MESSAGE}
        if not query:
            return {"results": [], "message": NO_RESULTS_MESSAGE}
        try:
            sources = self._knowledge_base.search(agent_id, query)
        except Exception:
            logger.warning("Knowledge base search failed for agent %s", agent_id, exc_info=True)
            return {"results": [], "message": NO_RESULTS_MESSAGE}
        if not sources:
            return {"results": [], "message": NO_RESULTS_MESSAGE}
        return {"results": [source.model_dump() for source in sources]}
