"""Regression tests for :mod:`support_inbox.agents.service`."""

import asyncio

import pytest

from conftest import FakeClock, FakeGateway, ScriptedModel, reply, run
from support_inbox.agents.knowledge import (
    NOT_CONFIGURED_MESSAGE,
    InMemoryKnowledgeBase,
    KnowledgeSearchTool,
)
from support_inbox.agents.logs import InMemoryInteractionLogRepository, InteractionLogWriter
from support_inbox.agents.providers import ModelTurn, ProviderConfigurationError, ToolCallRequest
from support_inbox.agents.schemas import CallOptions, KnowledgeSource
from support_inbox.agents.service import HANDOFF_MESSAGE, SupportAgentService


def _service(model, *, clock=None, repository=None, **kwargs):
    clock = clock or FakeClock()
    repository = repository or InMemoryInteractionLogRepository()
    service = SupportAgentService(
        FakeGateway(model),
        InteractionLogWriter(repository),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )
    return service, repository


def _search_call(query: str, call_id: str = "call-1") -> ModelTurn:
    return ModelTurn(
        text="",
        tool_calls=[ToolCallRequest(id=call_id, name="searchKnowledgeBase", arguments={"query": query})],
    )


def test_successful_run_returns_structured_decision(agent, conversation, make_messages):
    model = ScriptedModel([reply("Nosso horário é das 9h às 18h.", sentiment="positive")])
    service, repository = _service(model)

    result = run(service.process(agent, conversation, make_messages("Qual o horário?")))

    assert result.success is True
    assert result.error is None
    assert result.response.message == "Nosso horário é das 9h às 18h."
    assert result.response.sentiment == "positive"
    assert result.log_id in repository.logs
    first_call = model.calls[0]
    assert first_call["messages"][0]["role"] == "system"
    assert "Maria" in first_call["messages"][0]["content"]
    assert first_call["messages"][-1] == {"role": "user", "content": "Qual o horário?"}
    assert first_call["temperature"] == 0.4
    assert first_call["max_tokens"] == 512
    assert first_call["tools"][0]["function"]["name"] == "searchKnowledgeBase"


def test_burst_of_three_messages_produces_one_call_and_one_log(agent, conversation, make_messages):
    model = ScriptedModel([reply()])
    service, repository = _service(model)
    messages = make_messages("Oi", "tudo bem?", "queria saber do meu pedido")

    result = run(
        service.process(agent, conversation, messages, message_ids=["m1", "m2", "m3"])
    )

    assert result.success
    assert len(model.calls) == 1
    history = model.calls[0]["messages"][1:]
    assert [m["content"] for m in history] == ["Oi", "tudo bem?", "queria saber do meu pedido"]
    [log] = repository.for_conversation(conversation.id)
    assert log.message_ids == ["m1", "m2", "m3"]
    assert log.input == "queria saber do meu pedido"
    assert log.model == "gemini-2.5-flash"
    assert log.error is None


def test_history_keeps_last_ten_messages_with_roles(agent, conversation, make_messages):
    model = ScriptedModel([reply()])
    service, _ = _service(model)
    inbound = make_messages(*[f"msg {i}" for i in range(12)])
    outbound = make_messages("resposta", direction="outbound")
    messages = inbound + [outbound[0].model_copy(update={"id": "out-1"})]

    run(service.process(agent, conversation, messages))

    history = model.calls[0]["messages"][1:]
    assert len(history) == 10
    assert history[0]["content"] == "msg 3"
    assert history[-1] == {"role": "assistant", "content": "resposta"}


def test_call_options_override_agent_parameters(agent, conversation, make_messages):
    model = ScriptedModel([reply()])
    service, _ = _service(model)

    run(
        service.process(
            agent, conversation, make_messages("Oi"), call_options=CallOptions(temperature=0.0)
        )
    )

    assert model.calls[0]["temperature"] == 0.0
    assert model.calls[0]["max_tokens"] == 512


def test_retry_after_failure_waits_one_second(agent, conversation, make_messages):
    clock = FakeClock()
    model = ScriptedModel([RuntimeError("upstream 503"), reply("Tudo certo!")])
    service, repository = _service(model, clock=clock)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success is True
    assert result.response.message == "Tudo certo!"
    assert len(model.calls) == 2
    assert clock.sleeps == [1.0]
    assert result.latency_ms >= 1000
    [log] = repository.logs.values()
    assert log.error is None
    assert log.output.message == "Tudo certo!"
    assert log.latency_ms == result.latency_ms


def test_retry_uses_real_sleep_by_default(agent, conversation, make_messages):
    model = ScriptedModel([RuntimeError("boom"), reply()])
    service = SupportAgentService(
        FakeGateway(model), InteractionLogWriter(InMemoryInteractionLogRepository())
    )

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success
    assert result.latency_ms >= 1000


def test_two_failures_force_a_handoff(agent, conversation, make_messages):
    clock = FakeClock()
    model = ScriptedModel([RuntimeError("boom"), RuntimeError("boom again")])
    service, repository = _service(model, clock=clock)
    last_input = "Quero cancelar " + "x" * 300

    result = run(service.process(agent, conversation, make_messages("Oi", last_input)))

    assert result.success is False
    assert result.error == "boom again"
    assert len(model.calls) == 2
    assert clock.sleeps == [1.0]
    decision = result.response
    assert decision.message == HANDOFF_MESSAGE
    assert decision.should_handoff is True
    assert decision.confidence == 0
    assert decision.sentiment == "neutral"
    assert decision.handoff_reason == "Erro técnico após 2 tentativas: boom again"
    assert last_input[:200] in decision.handoff_summary
    assert last_input not in decision.handoff_summary
    [log] = repository.logs.values()
    assert log.error == "boom again"
    assert log.output.should_handoff is True


def test_attempt_timeout_counts_as_failure(agent, conversation, make_messages):
    class _Hanging:
        calls = 0

        async def complete(self, messages, **kwargs):
            _Hanging.calls += 1
            await asyncio.sleep(10)

    service, _ = _service(_Hanging(), attempt_timeout=0.01)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success is False
    assert _Hanging.calls == 2
    assert result.response.should_handoff


def test_empty_model_text_counts_as_failure(agent, conversation, make_messages):
    model = ScriptedModel([ModelTurn(text="   "), reply("Agora sim")])
    service, _ = _service(model)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success
    assert result.response.message == "Agora sim"
    assert len(model.calls) == 2


def test_plain_text_reply_is_wrapped(agent, conversation, make_messages):
    model = ScriptedModel([ModelTurn(text="Claro, já verifico para você.")])
    service, _ = _service(model)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success
    assert result.response.message == "Claro, já verifico para você."
    assert result.response.confidence == 0.5


def test_configuration_error_is_not_retried(agent, conversation, make_messages):
    clock = FakeClock()
    repository = InMemoryInteractionLogRepository()
    service = SupportAgentService(
        FakeGateway(error=ProviderConfigurationError("API key not configured for provider 'google'")),
        InteractionLogWriter(repository),
        sleep=clock.sleep,
        clock=clock,
    )

    with pytest.raises(ProviderConfigurationError):
        run(service.process(agent, conversation, make_messages("Oi")))

    assert clock.sleeps == []
    assert repository.logs == {}


def test_tool_results_are_fed_back_and_traced(agent, conversation, make_messages):
    knowledge = InMemoryKnowledgeBase(
        {
            agent.id: [
                KnowledgeSource(title="Horário", content="Atendemos de segunda a sexta, 9h às 18h"),
                KnowledgeSource(title="Frete", content="Frete grátis acima de R$ 200"),
            ]
        }
    )
    model = ScriptedModel([_search_call("horário atendimento"), reply("Atendemos das 9h às 18h.")])
    service, repository = _service(model, knowledge_tool=KnowledgeSearchTool(knowledge))

    result = run(service.process(agent, conversation, make_messages("Qual o horário?")))

    assert result.success
    second_call = model.calls[1]["messages"]
    assert second_call[-2]["role"] == "assistant"
    assert second_call[-2]["tool_calls"][0]["id"] == "call-1"
    assert second_call[-1]["role"] == "tool"
    assert second_call[-1]["tool_call_id"] == "call-1"
    assert "Horário" in second_call[-1]["content"]
    [log] = repository.logs.values()
    [trace] = log.tool_calls
    assert trace.name == "searchKnowledgeBase"
    assert trace.args == {"query": "horário atendimento"}
    assert trace.result["results"][0]["title"] == "Horário"


def test_search_without_knowledge_base_returns_message(agent, conversation, make_messages):
    model = ScriptedModel([_search_call("frete"), reply()])
    service, repository = _service(model)

    run(service.process(agent, conversation, make_messages("Tem frete grátis?")))

    [log] = repository.logs.values()
    assert log.tool_calls[0].result == {"results": [], "message": NOT_CONFIGURED_MESSAGE}


def test_unknown_tool_returns_error_result(agent, conversation, make_messages):
    model = ScriptedModel(
        [
            ModelTurn(text="", tool_calls=[ToolCallRequest(id="c1", name="deleteAll", arguments={})]),
            reply(),
        ]
    )
    service, repository = _service(model)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success
    [log] = repository.logs.values()
    assert "deleteAll" in log.tool_calls[0].result["error"]


def test_step_budget_caps_model_calls(agent, conversation, make_messages):
    model = ScriptedModel(
        [ModelTurn(text="Ainda pesquisando", tool_calls=[ToolCallRequest(id="c", name="searchKnowledgeBase", arguments={"query": "x"})])],
        repeat_last=True,
    )
    service, repository = _service(model)

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert len(model.calls) == 5
    assert result.success
    assert result.response.message == "Ainda pesquisando"
    [log] = repository.logs.values()
    assert len(log.tool_calls) == 5
    assert log.tool_calls[-1].result is None


def test_log_failure_does_not_fail_the_run(agent, conversation, make_messages):
    class _BrokenRepository:
        def insert(self, log):
            raise RuntimeError("database is down")

    model = ScriptedModel([reply()])
    service, _ = _service(model, repository=_BrokenRepository())

    result = run(service.process(agent, conversation, make_messages("Oi")))

    assert result.success is True
    assert result.log_id is None


def test_run_test_returns_text_and_usage(agent):
    model = ScriptedModel([ModelTurn(text="Olá!", usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7})])
    service, repository = _service(model)

    response = run(service.run_test(agent, "Oi"))

    assert response.response == "Olá!"
    assert response.model == "gemini-2.5-flash"
    assert response.usage["total_tokens"] == 7
    system, user = model.calls[0]["messages"]
    assert system["content"].startswith(agent.system_prompt)
    assert "Nome do cliente: Cliente" in system["content"]
    assert user == {"role": "user", "content": "Oi"}
    assert model.calls[0]["tools"] is None
    assert repository.logs == {}
