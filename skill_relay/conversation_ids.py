# Copyright (c) Microsoft. All rights reserved.

"""
Skill Conversation Id Factory

Hands out opaque conversation ids for host-to-skill conversations and keeps
the mapping back to the original host-to-user conversation.
"""

import logging
import uuid
from typing import Any, Optional

from skill_relay.skills import SkillDescriptor
from skill_relay.storage import ConversationRelayRecord, ConversationStore

logger = logging.getLogger(__name__)


def _dump(model: Any) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def conversation_reference_from_activity(activity: Any) -> dict[str, Any]:
    """Wire-format conversation reference of an incoming user activity."""
    reference = {
        "activityId": activity.id,
        "user": _dump(activity.from_property),
        "bot": _dump(activity.recipient),
        "conversation": _dump(activity.conversation),
        "channelId": activity.channel_id,
        "locale": activity.locale,
        "serviceUrl": activity.service_url,
    }
    return {k: v for k, v in reference.items() if v is not None}


class SkillConversationIdFactory:
    """Creates, resolves and deletes relay records in a ``ConversationStore``."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def create_skill_conversation_id(
        self, activity: Any, skill: SkillDescriptor
    ) -> str:
        """
        Register the conversation ``activity`` belongs to and return a new id
        the skill will use to call back.
        """
        conversation_id = str(uuid.uuid4())
        record = ConversationRelayRecord(
            local_conversation_id=conversation_id,
            conversation_reference=conversation_reference_from_activity(activity),
            service_url=activity.service_url or "",
            skill_id=skill.skill_id,
            oauth_scope=skill.app_id,
        )
        await self.store.put(conversation_id, record)
        logger.info(f"🔗 Created skill conversation {conversation_id} for {skill.skill_id}")
        return conversation_id

    async def get_skill_conversation_reference(
        self, conversation_id: str
    ) -> Optional[ConversationRelayRecord]:
        return await self.store.get(conversation_id)

    async def delete_conversation_reference(self, conversation_id: str) -> bool:
        deleted = await self.store.delete(conversation_id)
        if deleted:
            logger.info(f"🧹 Deleted skill conversation {conversation_id}")
        return deleted
