# Copyright (c) Microsoft. All rights reserved.

"""
Connector Delivery

Normal delivery for activities a skill sends back through this host: the
activity is moved onto the original conversation and posted to the channel's
connector service.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

import aiohttp
from microsoft_agents.activity import Activity, ActivityTypes, ResourceResponse

from skill_relay.auth import BOT_FRAMEWORK_SCOPE, AppCredentials
from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.errors import ConversationNotFoundError, TokenProviderFailure, TransportFailure
from skill_relay.handler import ChannelServiceHandler
from skill_relay.storage import ConversationRelayRecord

logger = logging.getLogger(__name__)


class ConnectorChannelHandler(ChannelServiceHandler):
    """
    Delivers skill activities to the user through the Bot Connector REST API.

    ``endOfConversation`` from a skill is not delivered; it ends the skill
    conversation and removes its relay record.
    """

    def __init__(
        self,
        conversation_id_factory: SkillConversationIdFactory,
        credentials: AppCredentials,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._conversation_id_factory = conversation_id_factory
        self.credentials = credentials
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

    # --- ChannelServiceHandler ---
    async def on_send_to_conversation(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        return await self._deliver(conversation_id, None, activity)

    async def on_reply_to_activity(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        return await self._deliver(conversation_id, activity_id, activity)

    # --- Delivery ---
    async def _deliver(
        self,
        conversation_id: str,
        reply_to_id: Optional[str],
        activity: Activity,
    ) -> ResourceResponse:
        record = await self._conversation_id_factory.get_skill_conversation_reference(conversation_id)
        if record is None:
            raise ConversationNotFoundError(conversation_id)

        if activity.type == ActivityTypes.end_of_conversation:
            await self._conversation_id_factory.delete_conversation_reference(conversation_id)
            logger.info(f"👋 Skill ended conversation {conversation_id}")
            return ResourceResponse(id=uuid.uuid4().hex)

        outgoing = apply_conversation_reference(activity, record)
        if reply_to_id:
            outgoing.reply_to_id = reply_to_id
        return await self._post_to_channel(record, outgoing)

    async def _post_to_channel(
        self, record: ConversationRelayRecord, activity: Activity
    ) -> ResourceResponse:
        service_url = (activity.service_url or record.service_url).rstrip("/")
        conversation = activity.conversation.id
        url = f"{service_url}/v3/conversations/{conversation}/activities"
        if activity.reply_to_id:
            url = f"{url}/{activity.reply_to_id}"

        headers = {}
        try:
            token = await self.credentials.get_access_token(BOT_FRAMEWORK_SCOPE)
        except TokenProviderFailure as e:
            raise TransportFailure(f"Unable to authenticate to connector: {e}") from e
        if token:
            headers["Authorization"] = f"Bearer {token}"

        payload = activity.model_dump(by_alias=True, exclude_none=True, mode="json")
        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers) as resp:
                if resp.status >= 300:
                    detail = await resp.text()
                    raise TransportFailure(
                        f"Connector rejected activity ({resp.status}): {detail[:200]}",
                        status=resp.status,
                    )
                body = await resp.json(content_type=None) if resp.content_length != 0 else None
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportFailure(f"POST to connector {service_url} failed: {e!r}") from e

        resource_id = (body or {}).get("id") or uuid.uuid4().hex
        logger.info(f"✅ Delivered {activity.type} to conversation {conversation}")
        return ResourceResponse(id=resource_id)


def apply_conversation_reference(activity: Activity, record: ConversationRelayRecord) -> Activity:
    """Copy of ``activity`` addressed to the original conversation in ``record``."""
    reference = record.conversation_reference
    data = activity.model_dump(by_alias=True, exclude_none=True)
    data["conversation"] = reference.get("conversation")
    data["channelId"] = reference.get("channelId") or data.get("channelId")
    data["serviceUrl"] = reference.get("serviceUrl") or record.service_url or data.get("serviceUrl")
    if reference.get("bot"):
        data["from"] = reference["bot"]
    if reference.get("user"):
        data["recipient"] = reference["user"]
    if reference.get("locale") and not data.get("locale"):
        data["locale"] = reference["locale"]
    return Activity.model_validate({k: v for k, v in data.items() if v is not None})
