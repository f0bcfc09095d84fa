# Copyright (c) Microsoft. All rights reserved.

"""
Conversation Relay Records

The record type and the storage contract the relay depends on.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ConversationRelayRecord:
    """
    Maps a locally generated conversation id back to the original conversation.

    ``conversation_reference`` holds the wire-format (camelCase) reference of the
    host-to-user conversation the skill was invoked from: ``conversation``,
    ``channelId``, ``serviceUrl``, ``user``, ``bot``, ``activityId``, ``locale``.
    Records are never mutated after creation.
    """

    local_conversation_id: str
    conversation_reference: dict[str, Any] = field(default_factory=dict)
    service_url: str = ""
    skill_id: str = ""
    oauth_scope: str = ""

    @property
    def conversation(self) -> dict[str, Any]:
        """The original conversation account."""
        return dict(self.conversation_reference.get("conversation") or {})

    @property
    def channel_id(self) -> Optional[str]:
        return self.conversation_reference.get("channelId")

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, payload: str | dict) -> "ConversationRelayRecord":
        data = json.loads(payload) if isinstance(payload, str) else payload
        return cls(
            local_conversation_id=data["local_conversation_id"],
            conversation_reference=data.get("conversation_reference") or {},
            service_url=data.get("service_url", ""),
            skill_id=data.get("skill_id", ""),
            oauth_scope=data.get("oauth_scope", ""),
        )


class ConversationStore(ABC):
    """
    Key-value persistence for relay records, keyed by local conversation id.

    Implementations must give read-after-write consistency within a process
    and tolerate concurrent get/delete of the same key.
    """

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[ConversationRelayRecord]:
        """Return the record for ``conversation_id``, or None."""

    @abstractmethod
    async def put(self, conversation_id: str, record: ConversationRelayRecord) -> None:
        """Store ``record`` under ``conversation_id``."""

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Remove the record. Returns True if something was deleted."""
