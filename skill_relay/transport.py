# Copyright (c) Microsoft. All rights reserved.

"""
Skill Transport

HTTP client that posts activities to skill endpoints.

No retries at this layer; the caller decides what a failure means.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from microsoft_agents.activity import (
    Activity,
    ActivityTypes,
    ConversationAccount,
    ConversationReference,
)

from skill_relay.auth import AppCredentials
from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.errors import TokenProviderFailure, TransportFailure
from skill_relay.skills import SkillDescriptor

logger = logging.getLogger(__name__)

SKILL_ROLE = "skill"

_REFERENCE_FIELDS = {
    "activityId": "id",
    "user": "from",
    "bot": "recipient",
    "conversation": "conversation",
    "channelId": "channelId",
    "locale": "locale",
    "serviceUrl": "serviceUrl",
}


def conversation_reference_for(activity: Activity) -> Optional[ConversationReference]:
    """Reference to the conversation ``activity`` belongs to, or None without conversation/channel."""
    if activity.conversation is None or not activity.channel_id:
        return None
    wire = activity.model_dump(by_alias=True, exclude_none=True, mode="json")
    reference = {key: wire[source] for key, source in _REFERENCE_FIELDS.items() if source in wire}
    return ConversationReference.model_validate(reference)


@dataclass
class InvokeResponse:
    status: int
    body: Any = None

    @property
    def is_successful(self) -> bool:
        return 200 <= self.status <= 299


class SkillHttpClient:
    """
    Posts activities to skills on behalf of this host.

    Args:
        credentials: Host credentials; a token scoped to the target skill's
            app id is attached to every request unless anonymous
        conversation_id_factory: Used by ``post_to_skill`` and
            ``end_skill_conversation`` to manage relay records
        timeout: Total request timeout in seconds
        session: Optional shared aiohttp session (owned by the caller)
    """

    def __init__(
        self,
        credentials: AppCredentials,
        conversation_id_factory: Optional[SkillConversationIdFactory] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.credentials = credentials
        self.conversation_id_factory = conversation_id_factory
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def post_activity(
        self,
        from_bot_id: str,
        to_bot_id: str,
        to_url: str,
        service_url: str,
        conversation_id: str,
        activity: Activity,
    ) -> InvokeResponse:
        """
        POST ``activity`` to the skill at ``to_url``.

        The activity is copied; the copy is stamped with ``conversation_id`` and
        with ``service_url`` as the callback the skill should reply to. The
        conversation the activity arrived in is kept in ``relates_to`` and the
        recipient is marked as a skill.

        Returns:
            The skill's status code and (JSON) body

        Raises:
            TransportFailure: if no HTTP response was obtained (network error, timeout)
        """
        outgoing = activity.model_copy(deep=True)
        relates_to = conversation_reference_for(activity)
        if relates_to is not None:
            outgoing.relates_to = relates_to
        if outgoing.recipient is not None:
            outgoing.recipient.role = SKILL_ROLE
        if outgoing.conversation is not None:
            outgoing.conversation.id = conversation_id
        else:
            outgoing.conversation = ConversationAccount(id=conversation_id)
        outgoing.service_url = service_url

        headers = {}
        try:
            token = await self.credentials.get_access_token(f"{to_bot_id}/.default")
        except TokenProviderFailure as e:
            raise TransportFailure(f"Unable to authenticate to skill {to_bot_id}: {e}") from e
        if token:
            headers["Authorization"] = f"Bearer {token}"

        payload = outgoing.model_dump(by_alias=True, exclude_none=True, mode="json")
        session = await self._get_session()
        logger.debug(f"📤 POST {outgoing.type} to {to_url} (conversation={conversation_id}, from={from_bot_id})")
        try:
            async with session.post(to_url, json=payload, headers=headers) as resp:
                body = None
                if resp.content_length != 0:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = await resp.text()
                logger.debug(f"📥 Skill {to_bot_id} answered {resp.status}")
                return InvokeResponse(status=resp.status, body=body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportFailure(f"POST to skill {to_url} failed: {e!r}") from e

    async def post_to_skill(
        self,
        from_bot_id: str,
        skill: SkillDescriptor,
        activity: Activity,
        service_url: Optional[str] = None,
    ) -> tuple[str, InvokeResponse]:
        """
        Relay a user activity to ``skill`` in a newly registered skill conversation.

        Returns:
            The new skill conversation id and the skill's response. The relay
            record is dropped again when the POST fails without a response.
        """
        if self.conversation_id_factory is None:
            raise RuntimeError("post_to_skill requires a conversation id factory")
        conversation_id = await self.conversation_id_factory.create_skill_conversation_id(
            activity, skill
        )
        try:
            response = await self.post_activity(
                from_bot_id,
                skill.app_id,
                skill.endpoint,
                service_url or skill.host_endpoint,
                conversation_id,
                activity,
            )
        except TransportFailure:
            await self.conversation_id_factory.delete_conversation_reference(conversation_id)
            raise
        return conversation_id, response

    async def end_skill_conversation(
        self,
        from_bot_id: str,
        skill: SkillDescriptor,
        conversation_id: str,
        code: Optional[str] = None,
    ) -> Optional[InvokeResponse]:
        """
        Tell ``skill`` the conversation is over so it can clean up, then drop the relay record.

        ``code`` must be an end-of-conversation code the schema accepts.

        Returns None when the conversation is unknown.
        """
        if self.conversation_id_factory is None:
            raise RuntimeError("end_skill_conversation requires a conversation id factory")
        record = await self.conversation_id_factory.get_skill_conversation_reference(conversation_id)
        if record is None:
            logger.warning(f"⚠️ No skill conversation {conversation_id} to end")
            return None

        reference = record.conversation_reference
        fields = {
            "type": ActivityTypes.end_of_conversation,
            "code": code,
            "channel_id": reference.get("channelId"),
            "service_url": record.service_url or None,
            "conversation": record.conversation or None,
            "from_property": reference.get("bot"),
            "recipient": reference.get("user"),
            "locale": reference.get("locale"),
        }
        end_of_conversation = Activity(**{k: v for k, v in fields.items() if v is not None})
        try:
            return await self.post_activity(
                from_bot_id,
                skill.app_id,
                skill.endpoint,
                skill.host_endpoint,
                conversation_id,
                end_of_conversation,
            )
        finally:
            await self.conversation_id_factory.delete_conversation_reference(conversation_id)
