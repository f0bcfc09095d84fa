# Copyright (c) Microsoft. All rights reserved.

"""
Token Exchange Skill Handler

Sits in front of normal delivery for activities a skill sends back through
this host. When a skill asks the user to sign in with an OAuth card that
carries a token exchange resource, the handler tries to exchange the token
silently and hands it to the skill as a ``signin/tokenExchange`` invoke
instead of showing the card.

Pipeline per activity:

    Scan     -> no OAuth card                     -> pass through
    Lookup   -> unknown caller / no exchange uri  -> pass through
    Exchange -> no token / provider failure       -> pass through
    Relay    -> no relay record / skill not 2xx   -> pass through
             -> skill accepted the invoke         -> card suppressed

Passing through always means the card reaches the user as a normal sign-in
prompt. Only a malformed activity raises.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from microsoft_agents.activity import Activity, ActivityTypes, ResourceResponse

from skill_relay.auth import get_app_id
from skill_relay.cards import OAuthCardAttachment, find_oauth_card
from skill_relay.config import RelayConfiguration
from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.errors import MalformedActivityError, TransportFailure
from skill_relay.skills import SkillDescriptor, SkillRegistry
from skill_relay.storage import ConversationRelayRecord
from skill_relay.token_exchange import Exchanged, ExchangeFailed, TokenExchangeClient
from skill_relay.transport import SkillHttpClient

logger = logging.getLogger(__name__)

TOKEN_EXCHANGE_OPERATION_NAME = "signin/tokenExchange"


class InterceptDecision(str, Enum):
    """Why an activity was (or was not) intercepted."""

    NO_OAUTH_CARD = "no_oauth_card"
    UNKNOWN_SKILL = "unknown_skill"
    NON_EXCHANGEABLE_CARD = "non_exchangeable_card"
    NOT_EXCHANGEABLE = "not_exchangeable"
    TOKEN_PROVIDER_FAILURE = "token_provider_failure"
    MISSING_RELAY_RECORD = "missing_relay_record"
    TRANSPORT_FAILURE = "transport_failure"
    RELAYED = "relayed"

    @property
    def suppresses_delivery(self) -> bool:
        return self is InterceptDecision.RELAYED


# =============================================================================
# CAPABILITY SET
# =============================================================================

class ChannelServiceHandler(ABC):
    """Entry points a skill calls back into when it sends activities."""

    @abstractmethod
    async def on_send_to_conversation(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        """Deliver a new activity into ``conversation_id``."""

    @abstractmethod
    async def on_reply_to_activity(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        """Deliver ``activity`` as a reply to ``activity_id``."""


# =============================================================================
# TOKEN EXCHANGE HANDLER
# =============================================================================

class TokenExchangeSkillHandler(ChannelServiceHandler):
    """
    A ``ChannelServiceHandler`` that intercepts OAuth cards for SSO.

    Wraps another handler (normal delivery) and only calls it when the
    activity is not intercepted. Holds no per-activity state, so one instance
    serves any number of concurrent activities.

    Args:
        inner: Handler that performs normal delivery
        config: Host identity and exchange connection
        skills: Registered skills; callers not in it are never intercepted
        conversation_id_factory: Resolves the relay record of a skill conversation
        token_exchange: Performs the exchange against the token service
        skill_client: Posts the token exchange invoke to the skill
    """

    def __init__(
        self,
        inner: ChannelServiceHandler,
        config: RelayConfiguration,
        skills: SkillRegistry,
        conversation_id_factory: SkillConversationIdFactory,
        token_exchange: TokenExchangeClient,
        skill_client: SkillHttpClient,
    ):
        self._inner = inner
        self._config = config
        self._skills = skills
        self._conversation_id_factory = conversation_id_factory
        self._token_exchange = token_exchange
        self._skill_client = skill_client

    # --- Entry points ---
    async def on_send_to_conversation(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        decision = await self.intercept_oauth_cards(claims_identity, activity)
        if decision.suppresses_delivery:
            return ResourceResponse(id=uuid.uuid4().hex)
        return await self._inner.on_send_to_conversation(claims_identity, conversation_id, activity)

    async def on_reply_to_activity(
        self,
        claims_identity: Any,
        conversation_id: str,
        activity_id: str,
        activity: Activity,
    ) -> ResourceResponse:
        decision = await self.intercept_oauth_cards(claims_identity, activity)
        if decision.suppresses_delivery:
            return ResourceResponse(id=uuid.uuid4().hex)
        return await self._inner.on_reply_to_activity(
            claims_identity, conversation_id, activity_id, activity
        )

    # --- Interception ---
    def get_calling_skill(self, claims_identity: Any) -> Optional[SkillDescriptor]:
        """Registered skill behind ``claims_identity``, or None."""
        return self._skills.lookup_by_app_id(get_app_id(claims_identity))

    async def intercept_oauth_cards(
        self, claims_identity: Any, activity: Activity
    ) -> InterceptDecision:
        """
        Run the interception pipeline for one activity.

        The activity itself is never modified.

        Raises:
            MalformedActivityError: if the card or the activity cannot be processed
        """
        oauth_card = find_oauth_card(activity)
        if oauth_card is None:
            return InterceptDecision.NO_OAUTH_CARD

        target_skill = self.get_calling_skill(claims_identity)
        if target_skill is None:
            logger.info("🔓 OAuth card from an unregistered caller; showing sign-in card")
            return InterceptDecision.UNKNOWN_SKILL

        if not oauth_card.is_exchangeable:
            logger.info(f"🔓 OAuth card from {target_skill.skill_id} has no exchange resource")
            return InterceptDecision.NON_EXCHANGEABLE_CARD

        if activity.recipient is None or not activity.recipient.id:
            raise MalformedActivityError("OAuth card activity has no recipient")
        if activity.conversation is None or not activity.conversation.id:
            raise MalformedActivityError("OAuth card activity has no conversation")

        connection_name = self._config.connection_name or oauth_card.connection_name
        outcome = await self._token_exchange.exchange(
            claims_identity,
            activity.recipient.id,
            connection_name,
            activity.channel_id,
            oauth_card.token_exchange_resource.uri,
        )
        if isinstance(outcome, ExchangeFailed):
            # Show oauth card if token exchange fails
            logger.warning(f"⚠️ Unable to exchange token for {target_skill.skill_id}: {outcome.cause}")
            return InterceptDecision.TOKEN_PROVIDER_FAILURE
        if not isinstance(outcome, Exchanged):
            return InterceptDecision.NOT_EXCHANGEABLE

        return await self._send_token_exchange_invoke_to_skill(
            activity, oauth_card, outcome.token, target_skill
        )

    async def _send_token_exchange_invoke_to_skill(
        self,
        incoming: Activity,
        oauth_card: OAuthCardAttachment,
        token: str,
        target_skill: SkillDescriptor,
    ) -> InterceptDecision:
        local_conversation_id = incoming.conversation.id
        record = await self._conversation_id_factory.get_skill_conversation_reference(
            local_conversation_id
        )
        if record is None or not record.conversation:
            logger.warning(
                f"⚠️ No relay record for conversation {local_conversation_id}; showing sign-in card"
            )
            return InterceptDecision.MISSING_RELAY_RECORD

        invoke = build_token_exchange_invoke(incoming, record, oauth_card, token)

        # Route the activity to the skill
        try:
            response = await self._skill_client.post_activity(
                self._config.bot_id,
                target_skill.app_id,
                target_skill.endpoint,
                self._config.skill_host_endpoint,
                record.local_conversation_id,
                invoke,
            )
        except TransportFailure as e:
            logger.warning(f"⚠️ Token exchange invoke to {target_skill.skill_id} failed: {e}")
            return InterceptDecision.TRANSPORT_FAILURE

        if not response.is_successful:
            logger.warning(
                f"⚠️ Skill {target_skill.skill_id} rejected token exchange invoke ({response.status})"
            )
            return InterceptDecision.TRANSPORT_FAILURE

        logger.info(f"✅ Token exchange invoke delivered to {target_skill.skill_id}; OAuth card suppressed")
        return InterceptDecision.RELAYED


def build_token_exchange_invoke(
    incoming: Activity,
    record: ConversationRelayRecord,
    oauth_card: OAuthCardAttachment,
    token: str,
) -> Activity:
    """
    Reply-shaped ``signin/tokenExchange`` invoke for ``incoming``.

    The conversation comes from ``record`` (the original conversation), never
    from the activity being intercepted.
    """
    fields = {
        "type": ActivityTypes.invoke,
        "name": TOKEN_EXCHANGE_OPERATION_NAME,
        "value": {
            "id": oauth_card.token_exchange_resource.id,
            "token": token,
            "connectionName": oauth_card.connection_name,
        },
        "from_property": incoming.recipient.model_copy() if incoming.recipient else None,
        "recipient": incoming.from_property.model_copy() if incoming.from_property else None,
        "reply_to_id": incoming.id,
        "channel_id": incoming.channel_id,
        "service_url": incoming.service_url,
        "locale": incoming.locale,
        "conversation": record.conversation,
    }
    return Activity(**{k: v for k, v in fields.items() if v is not None})
