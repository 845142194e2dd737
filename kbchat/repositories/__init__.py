from kbchat.repositories.conversations import InMemoryConversationsRepository, PostgresConversationsRepository
from kbchat.repositories.generations import InMemoryChatGenerationsRepository, PostgresChatGenerationsRepository
from kbchat.repositories.messages import InMemoryMessagesRepository, PostgresMessagesRepository
from kbchat.repositories.quota import InMemoryQuotaRepository, PostgresQuotaRepository, QuotaSnapshot

__all__ = [
    "InMemoryConversationsRepository",
    "PostgresConversationsRepository",
    "InMemoryChatGenerationsRepository",
    "PostgresChatGenerationsRepository",
    "InMemoryMessagesRepository",
    "PostgresMessagesRepository",
    "InMemoryQuotaRepository",
    "PostgresQuotaRepository",
    "QuotaSnapshot",
]
