from support_inbox.agents.knowledge import (
    NO_RESULTS_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    SEARCH_TOOL_NAME,
    InMemoryKnowledgeBase,
    KnowledgeSearchTool,
)
from support_inbox.agents.schemas import KnowledgeSource


def _knowledge_base() -> InMemoryKnowledgeBase:
    kb = InMemoryKnowledgeBase()
    kb.add("agent-1", KnowledgeSource(title="Trocas", content="Trocas em até 30 dias com nota fiscal"))
    kb.add("agent-1", KnowledgeSource(title="Frete", content="Frete grátis acima de R$ 200"))
    kb.add("agent-2", KnowledgeSource(title="Trocas", content="Outra loja"))
    return kb


def test_tool_definition_requires_query():
    definition = KnowledgeSearchTool().definition()

    assert definition["function"]["name"] == SEARCH_TOOL_NAME
    assert definition["function"]["parameters"]["required"] == ["query"]


def test_search_ranks_by_term_overlap_per_agent():
    results = _knowledge_base().search("agent-1", "trocas com nota fiscal")

    assert [r.title for r in results] == ["Trocas"]
    assert results[0].content.startswith("Trocas em até 30 dias")


def test_tool_without_knowledge_base():
    assert KnowledgeSearchTool().run("agent-1", {"query": "trocas"}) == {
        "results": [],
        "message": NOT_CONFIGURED_MESSAGE,
    }


def test_tool_returns_serialized_sources():
    result = KnowledgeSearchTool(_knowledge_base()).run("agent-1", {"query": "frete"})

    assert result == {"results": [{"title": "Frete", "content": "Frete grátis acima de R$ 200"}]}


def test_tool_reports_no_results_and_failures():
    class _Broken:
        def search(self, agent_id, query, limit=3):
            raise ConnectionError("vector store offline")

    assert KnowledgeSearchTool(_knowledge_base()).run("agent-1", {"query": "garantia"})["message"] == NO_RESULTS_MESSAGE
    assert KnowledgeSearchTool(_Broken()).run("agent-1", {"query": "frete"})["message"] == NO_RESULTS_MESSAGE
