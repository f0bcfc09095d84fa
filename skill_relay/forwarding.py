# Copyright (c) Microsoft. All rights reserved.

"""
Skill Forwarding

Forwards activities users send to this host on to a skill, and remembers
which skill conversation each user conversation is talking to.

The first activity of a user conversation opens a new skill conversation
(``post_to_skill``). Later activities reuse it for as long as its relay record
exists; once the skill ends the conversation the record is gone and the next
activity opens a fresh one.

When forwarding fails (no response, or a 5xx from the skill) the turn is
treated as failed: the skill is sent an ``endOfConversation`` so it can clean
up, and the user conversation forgets its active skill.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from microsoft_agents.activity import Activity, ActivityTypes

from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.errors import MalformedActivityError, SkillNotConfiguredError, TransportFailure
from skill_relay.skills import SkillDescriptor, SkillRegistry
from skill_relay.transport import InvokeResponse, SkillHttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveSkill:
    skill: SkillDescriptor
    conversation_id: str


class SkillForwarder:
    """
    Routes user activities to a skill.

    Args:
        skills: Registered skills
        skill_client: Client used to post to skills
        conversation_id_factory: Resolves skill conversation ids to relay records
        bot_id: App id of this host bot
        default_skill_id: Skill new conversations are opened with; the first
            registered skill when empty
    """

    def __init__(
        self,
        skills: SkillRegistry,
        skill_client: SkillHttpClient,
        conversation_id_factory: SkillConversationIdFactory,
        bot_id: str = "",
        default_skill_id: str = "",
    ):
        self.skills = skills
        self.skill_client = skill_client
        self.conversation_id_factory = conversation_id_factory
        self.bot_id = bot_id
        self.default_skill_id = default_skill_id
        self._active: dict[str, ActiveSkill] = {}

    def target_skill(self) -> Optional[SkillDescriptor]:
        """Skill a new user conversation is forwarded to."""
        if self.default_skill_id:
            skill = self.skills.get(self.default_skill_id)
            if skill is not None:
                return skill
            logger.warning(f"⚠️ Default skill {self.default_skill_id} is not registered")
        return next(iter(self.skills), None)

    async def active_skill(self, user_conversation_id: str) -> Optional[ActiveSkill]:
        """The skill conversation still open for ``user_conversation_id``, if any."""
        active = self._active.get(user_conversation_id)
        if active is None:
            return None
        record = await self.conversation_id_factory.get_skill_conversation_reference(
            active.conversation_id
        )
        if record is None:
            # The skill ended the conversation
            self._active.pop(user_conversation_id, None)
            return None
        return active

    # =========================================================================
    # FORWARDING
    # =========================================================================

    async def forward(self, activity: Activity) -> InvokeResponse:
        """
        Forward ``activity`` to the active skill of its conversation.

        Raises:
            MalformedActivityError: if the activity has no conversation
            SkillNotConfiguredError: if no skill is registered
            TransportFailure: if the skill could not be reached
        """
        if activity.conversation is None or not activity.conversation.id:
            raise MalformedActivityError("Activity has no conversation to forward")
        user_conversation_id = activity.conversation.id

        try:
            response = await self._post(user_conversation_id, activity)
        except TransportFailure as e:
            logger.error(f"❌ Forwarding to skill failed: {e}")
            await self.end_active_skill(user_conversation_id)
            raise

        if response.status >= 500:
            logger.error(f"❌ Skill answered {response.status} for conversation {user_conversation_id}")
            await self.end_active_skill(user_conversation_id)
        elif activity.type == ActivityTypes.end_of_conversation:
            self._active.pop(user_conversation_id, None)
        return response

    async def _post(self, user_conversation_id: str, activity: Activity) -> InvokeResponse:
        active = await self.active_skill(user_conversation_id)
        if active is not None:
            skill = active.skill
            return await self.skill_client.post_activity(
                self.bot_id,
                skill.app_id,
                skill.endpoint,
                skill.host_endpoint,
                active.conversation_id,
                activity,
            )

        skill = self.target_skill()
        if skill is None:
            raise SkillNotConfiguredError("No skill is registered to forward to")
        conversation_id, response = await self.skill_client.post_to_skill(self.bot_id, skill, activity)
        self._active[user_conversation_id] = ActiveSkill(skill, conversation_id)
        logger.info(f"➡️ Conversation {user_conversation_id} forwarded to {skill.skill_id}")
        return response

    async def end_active_skill(self, user_conversation_id: str, code: Optional[str] = None) -> bool:
        """
        Send ``endOfConversation`` to the active skill and forget it.

        Failing to reach the skill is logged, not raised. Returns False when
        the conversation had no active skill.
        """
        active = self._active.pop(user_conversation_id, None)
        if active is None:
            return False
        try:
            await self.skill_client.end_skill_conversation(
                self.bot_id, active.skill, active.conversation_id, code=code
            )
        except TransportFailure as e:
            logger.warning(
                f"⚠️ Unable to send endOfConversation to {active.skill.skill_id}: {e}"
            )
        return True
