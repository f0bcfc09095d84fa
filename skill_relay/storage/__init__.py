# Copyright (c) Microsoft. All rights reserved.

"""
Storage Module

Relay record persistence: the storage contract plus in-memory and
PostgreSQL implementations.
"""

from skill_relay.storage.base import ConversationRelayRecord, ConversationStore
from skill_relay.storage.memory_storage import MemoryConversationStore
from skill_relay.storage.pg_storage import PostgresConversationStore

__all__ = [
    "ConversationRelayRecord",
    "ConversationStore",
    "MemoryConversationStore",
    "PostgresConversationStore",
]
