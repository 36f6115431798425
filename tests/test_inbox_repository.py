from support_inbox.agents.schemas import AgentConfig
from support_inbox.conversations.repository import InMemoryInboxRepository, _row_to_agent


def test_row_to_agent_converts_debounce_and_defaults():
    agent = _row_to_agent(
        {
            "id": 7,
            "name": "Bot",
            "system_prompt": "Atenda bem.",
            "model": None,
            "temperature": 0,
            "max_tokens": None,
            "debounce_ms": 2500,
            "is_active": True,
            "is_default": True,
        }
    )

    assert agent.id == "7"
    assert agent.model == "gemini-2.5-flash"
    assert agent.temperature == 0
    assert agent.max_tokens == 1024
    assert agent.debounce_seconds == 2.5


def test_get_or_create_reuses_conversation_by_phone():
    repository = InMemoryInboxRepository()

    first = repository.get_or_create_conversation("+5511999999999", "Maria")
    second = repository.get_or_create_conversation("+5511999999999")
    other = repository.get_or_create_conversation("+5521988887777")

    assert first.id == second.id
    assert other.id != first.id


def test_recent_messages_are_oldest_first_and_limited():
    repository = InMemoryInboxRepository()
    conversation = repository.get_or_create_conversation("+5511999999999")
    for i in range(12):
        repository.add_message(conversation.id, "inbound", f"msg {i}")

    recent = repository.list_recent_messages(conversation.id, limit=10)

    assert [m.content for m in recent] == [f"msg {i}" for i in range(2, 12)]


def test_default_agent_prefers_flagged_active_agent():
    repository = InMemoryInboxRepository()
    repository.add_agent(AgentConfig(id="a", system_prompt="x"))
    repository.add_agent(AgentConfig(id="b", system_prompt="x", is_default=True, is_active=False))
    repository.add_agent(AgentConfig(id="c", system_prompt="x", is_default=True))

    assert repository.get_default_agent().id == "c"
