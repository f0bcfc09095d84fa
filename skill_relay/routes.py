# Copyright (c) Microsoft. All rights reserved.

"""
Channel Service Routes

aiohttp routes skills call back into (the subset of the Bot Framework
channel API this host supports), the messages route users reach the host
through, and the allowed-callers check.
"""

import logging

from aiohttp.web import Application, Request, Response, json_response
from aiohttp.web_middlewares import middleware as web_middleware
from microsoft_agents.activity import Activity, ActivityTypes

from skill_relay.auth import get_app_id
from skill_relay.errors import (
    ConversationNotFoundError,
    MalformedActivityError,
    SkillNotConfiguredError,
    TransportFailure,
)
from skill_relay.forwarding import SkillForwarder
from skill_relay.handler import ChannelServiceHandler
from skill_relay.skills import SkillRegistry

logger = logging.getLogger(__name__)

SKILLS_ROUTE_PREFIX = "/api/skills"
MESSAGES_ROUTE = "/api/messages"


def _error(status: int, code: str, message: str) -> Response:
    return json_response({"error": {"code": code, "message": message}}, status=status)


async def _read_activity(request: Request) -> Activity:
    body = await request.json()
    return Activity.model_validate(body)


async def _dispatch(request: Request, coro_factory) -> Response:
    try:
        activity = await _read_activity(request)
    except ValueError as e:
        logger.warning(f"⚠️ Rejected invalid activity payload on {request.path}: {e}")
        return _error(400, "BadArgument", "Invalid activity payload")

    try:
        resource = await coro_factory(request.get("claims_identity"), activity)
    except MalformedActivityError as e:
        logger.warning(f"⚠️ Malformed activity on {request.path}: {e}")
        return _error(400, "BadArgument", str(e))
    except ConversationNotFoundError as e:
        logger.warning(f"⚠️ {e}")
        return _error(404, "ConversationNotFound", str(e))
    except TransportFailure as e:
        logger.error(f"❌ Delivery failed: {e}")
        return _error(502, "ServiceError", "Unable to deliver activity")

    return json_response(resource.model_dump(by_alias=True, exclude_none=True))


def register_channel_service_routes(
    app: Application,
    handler: ChannelServiceHandler,
    prefix: str = SKILLS_ROUTE_PREFIX,
) -> None:
    """Add the send-to-conversation and reply-to-activity routes under ``prefix``."""

    async def send_to_conversation(request: Request) -> Response:
        conversation_id = request.match_info["conversation_id"]
        return await _dispatch(
            request,
            lambda identity, activity: handler.on_send_to_conversation(
                identity, conversation_id, activity
            ),
        )

    async def reply_to_activity(request: Request) -> Response:
        conversation_id = request.match_info["conversation_id"]
        activity_id = request.match_info["activity_id"]
        return await _dispatch(
            request,
            lambda identity, activity: handler.on_reply_to_activity(
                identity, conversation_id, activity_id, activity
            ),
        )

    app.router.add_post(
        f"{prefix}/v3/conversations/{{conversation_id}}/activities", send_to_conversation
    )
    app.router.add_post(
        f"{prefix}/v3/conversations/{{conversation_id}}/activities/{{activity_id}}",
        reply_to_activity,
    )


def register_messages_route(
    app: Application,
    forwarder: SkillForwarder,
    path: str = MESSAGES_ROUTE,
) -> None:
    """Add the route channels deliver user activities to; they are forwarded to a skill."""

    async def messages(request: Request) -> Response:
        try:
            activity = await _read_activity(request)
        except ValueError as e:
            logger.warning(f"⚠️ Rejected invalid activity payload on {request.path}: {e}")
            return _error(400, "BadArgument", "Invalid activity payload")

        try:
            response = await forwarder.forward(activity)
        except MalformedActivityError as e:
            logger.warning(f"⚠️ Malformed activity on {request.path}: {e}")
            return _error(400, "BadArgument", str(e))
        except SkillNotConfiguredError as e:
            logger.error(f"❌ {e}")
            return _error(503, "ServiceUnavailable", str(e))
        except TransportFailure:
            return _error(502, "ServiceError", "Unable to reach skill")

        if activity.type == ActivityTypes.invoke:
            if response.body is None:
                return Response(status=response.status)
            return json_response(response.body, status=response.status)
        if not response.is_successful:
            return _error(502, "ServiceError", f"Skill answered {response.status}")
        return Response(status=202)

    app.router.add_post(path, messages)


def allowed_skills_middleware(
    registry: SkillRegistry,
    enforce: bool = True,
    prefix: str = SKILLS_ROUTE_PREFIX,
):
    """
    Reject callers on skill routes that are not registered skills.

    Must run after the middleware that puts ``claims_identity`` on the request.
    A request without an identity, or whose app id is blank, is rejected too.
    The host passes ``enforce=False`` when it runs anonymous (dev mode).
    """

    @web_middleware
    async def allowed_skills(request: Request, handler):
        if enforce and request.path.startswith(prefix):
            app_id = get_app_id(request.get("claims_identity"))
            if app_id.lower() not in registry.app_ids:
                logger.warning(f"🚫 Caller {app_id or '<unknown>'} is not an allowed skill")
                return _error(401, "Unauthorized", "Caller is not an allowed skill")
        return await handler(request)

    return allowed_skills
