"""Inbox conversations: storage and the inbound-to-reply flow."""

from .repository import InboxRepository, InMemoryInboxRepository, PostgresInboxRepository
from .service import ConversationNotFoundError, InboxOutcome, SupportInbox

__all__ = [
    "ConversationNotFoundError",
    "InMemoryInboxRepository",
    "InboxOutcome",
    "InboxRepository",
    "PostgresInboxRepository",
    "SupportInbox",
]
