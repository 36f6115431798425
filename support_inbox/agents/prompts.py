"""System prompt and history rendering for the support agent."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .schemas import AgentConfig, ConversationContext, MessageRecord

DEFAULT_LANGUAGE = "português do Brasil"
DEFAULT_CONTACT_NAME = "Cliente"

_INSTRUCTIONS = """INSTRUÇÕES IMPORTANTES:
1. Responda sempre em {language}
2. Seja educado, profissional e empático
3. Se não souber a resposta, admita e ofereça alternativas
4. Detecte o sentimento do cliente (positive, neutral, negative, frustrated)
5. Se o cliente estiver frustrado ou pedir para falar com humano, defina shouldHandoff como true
6. Inclua as fontes utilizadas quando aplicável
7. Use a ferramenta searchKnowledgeBase antes de responder perguntas sobre o negócio

FORMATO DA RESPOSTA (apenas um objeto JSON):
{{"message": "...", "sentiment": "positive|neutral|negative|frustrated", "confidence": 0.0-1.0, "shouldHandoff": false, "handoffReason": null, "handoffSummary": null, "sources": [{{"title": "...", "content": "..."}}]}}

CRITÉRIOS PARA TRANSFERÊNCIA (shouldHandoff = true):
- Cliente explicitamente pede para falar com atendente/humano
- Cliente expressa frustração repetida (3+ mensagens negativas)
- Assunto sensível (reclamação formal, problema financeiro, dados pessoais)
- Você não consegue ajudar após 2 tentativas
- Detecção de urgência real (emergência, prazo crítico)"""


def render_context(conversation: ConversationContext) -> str:
    contact_name = conversation.contact_name or DEFAULT_CONTACT_NAME
    return (
        "CONTEXTO DA CONVERSA:\n"
        f"- Nome do cliente: {contact_name}\n"
        f"- Telefone: {conversation.phone}\n"
        f"- Prioridade: {conversation.priority or 'normal'}\n"
        f"- Total de mensagens: {conversation.total_messages}"
    )


def build_system_prompt(
    agent: AgentConfig,
    conversation: ConversationContext,
    language: str = DEFAULT_LANGUAGE,
) -> str:
    """Concatenate the agent template, the conversation context and the rules."""

    return "\n\n".join(
        [
            agent.system_prompt.strip(),
            render_context(conversation),
            _INSTRUCTIONS.format(language=language),
        ]
    )


def build_history(messages: Sequence[MessageRecord]) -> list[dict[str, Any]]:
    """Map inbound messages to ``user`` turns and outbound ones to ``assistant``."""

    return [
        {
            "role": "user" if message.direction == "inbound" else "assistant",
            "content": message.content,
        }
        for message in messages
    ]
