# Copyright (c) Microsoft. All rights reserved.

"""
In-Memory Conversation Store

CAUTION: for local development and tests only. Records are lost on restart.
"""

import logging
from typing import Optional

from skill_relay.storage.base import ConversationRelayRecord, ConversationStore

logger = logging.getLogger(__name__)


class MemoryConversationStore(ConversationStore):
    """Dict-backed store; safe for concurrent tasks on one event loop."""

    def __init__(self):
        self._records: dict[str, ConversationRelayRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, conversation_id: str) -> Optional[ConversationRelayRecord]:
        return self._records.get(conversation_id)

    async def put(self, conversation_id: str, record: ConversationRelayRecord) -> None:
        self._records[conversation_id] = record
        logger.debug(f"Stored relay record {conversation_id}")

    async def delete(self, conversation_id: str) -> bool:
        removed = self._records.pop(conversation_id, None) is not None
        if removed:
            logger.debug(f"Deleted relay record {conversation_id}")
        return removed
