# Copyright (c) Microsoft. All rights reserved.

"""Skill Relay Host - wires the relay components into an aiohttp server"""

# --- Imports ---
import logging
import sys
from typing import Optional

from aiohttp.web import Application, Request, Response, json_response, run_app
from aiohttp.web_middlewares import middleware as web_middleware
from microsoft_agents.hosting.aiohttp import jwt_authorization_middleware
from microsoft_agents.hosting.core import (
    AgentAuthConfiguration,
    AuthenticationConstants,
    ClaimsIdentity,
)

from skill_relay.auth import AppCredentials
from skill_relay.config import Settings, get_settings
from skill_relay.connector import ConnectorChannelHandler
from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.handler import TokenExchangeSkillHandler
from skill_relay.forwarding import SkillForwarder
from skill_relay.routes import (
    allowed_skills_middleware,
    register_channel_service_routes,
    register_messages_route,
)
from skill_relay.skills import SkillRegistry
from skill_relay.storage import (
    ConversationStore,
    MemoryConversationStore,
    PostgresConversationStore,
)
from skill_relay.token_exchange import TokenExchangeClient, UserTokenClient
from skill_relay.transport import SkillHttpClient

logger = logging.getLogger(__name__)


# --- Logging ---
def configure_logging(level: int = logging.INFO) -> None:
    for name in ("skill_relay", "microsoft_agents"):
        component_logger = logging.getLogger(name)
        if not component_logger.handlers:
            component_logger.addHandler(logging.StreamHandler())
        component_logger.setLevel(level)

    # Suppress verbose Azure Identity HTTP logging during token acquisition
    logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)
    logging.getLogger("azure.identity").setLevel(logging.ERROR)


# --- Skill Relay Host ---
class SkillRelayHost:
    """
    Builds the relay components from ``Settings`` and serves the skill
    callback endpoints and the user-facing messages endpoint.

    The relay store is PostgreSQL when ``PG_DSN`` is set, in-memory otherwise.
    """

    # --- Initialization ---
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConversationStore] = None,
    ):
        self.settings = settings or get_settings()

        self.skills = SkillRegistry(self.settings.skills)
        if not len(self.skills):
            logger.warning("⚠️ No skills configured; every OAuth card will pass through")

        if store is None:
            store = (
                PostgresConversationStore(self.settings.pg_dsn)
                if self.settings.pg_dsn
                else MemoryConversationStore()
            )
        self.store = store
        self.conversation_id_factory = SkillConversationIdFactory(self.store)

        auth = self.settings.agent_auth
        self.credentials = AppCredentials(auth.client_id, auth.client_secret, auth.tenant_id)
        timeout = self.settings.request_timeout

        self.user_token_client = UserTokenClient(
            self.credentials, self.settings.oauth_api_endpoint, timeout=timeout
        )
        self.skill_client = SkillHttpClient(
            self.credentials, self.conversation_id_factory, timeout=timeout
        )
        self.connector = ConnectorChannelHandler(
            self.conversation_id_factory, self.credentials, timeout=timeout
        )
        self.handler = TokenExchangeSkillHandler(
            inner=self.connector,
            config=self.settings.relay_configuration(),
            skills=self.skills,
            conversation_id_factory=self.conversation_id_factory,
            token_exchange=TokenExchangeClient(self.user_token_client),
            skill_client=self.skill_client,
        )
        self.forwarder = SkillForwarder(
            skills=self.skills,
            skill_client=self.skill_client,
            conversation_id_factory=self.conversation_id_factory,
            bot_id=auth.client_id,
            default_skill_id=self.settings.default_skill_id,
        )
        logger.info(f"✅ Skill relay ready ({len(self.skills)} skill(s))")

    # --- Authentication ---
    def create_auth_configuration(self) -> AgentAuthConfiguration | None:
        auth = self.settings.agent_auth
        if auth.is_valid:
            logger.info("🔒 Using Client Credentials authentication")
            return AgentAuthConfiguration(
                client_id=auth.client_id,
                tenant_id=auth.tenant_id,
                client_secret=auth.client_secret,
            )

        logger.warning("⚠️ No auth env vars; running anonymous")
        return None

    # --- Lifecycle ---
    async def startup(self) -> None:
        if isinstance(self.store, PostgresConversationStore):
            await self.store.connect()

    async def cleanup(self) -> None:
        for closable in (self.user_token_client, self.skill_client, self.connector, self.credentials):
            try:
                await closable.close()
            except Exception as e:
                logger.error(f"Cleanup error: {e}")
        if isinstance(self.store, PostgresConversationStore):
            await self.store.close()

    # --- Server ---
    def create_app(self, auth_configuration: AgentAuthConfiguration | None = None) -> Application:
        async def health(_req: Request) -> Response:
            return json_response(
                {
                    "status": "ok",
                    "skills": len(self.skills),
                    "auth": "enabled" if auth_configuration else "anonymous",
                }
            )

        middlewares = []
        if auth_configuration:
            middlewares.append(jwt_authorization_middleware)

        @web_middleware
        async def anonymous_claims(request, handler):
            if not auth_configuration:
                request["claims_identity"] = ClaimsIdentity(
                    {
                        AuthenticationConstants.AUDIENCE_CLAIM: "anonymous",
                        AuthenticationConstants.APP_ID_CLAIM: "anonymous-app",
                    },
                    "Anonymous",
                )
            return await handler(request)

        middlewares.append(anonymous_claims)
        middlewares.append(allowed_skills_middleware(self.skills, enforce=auth_configuration is not None))
        app = Application(middlewares=middlewares)

        register_channel_service_routes(app, self.handler)
        register_messages_route(app, self.forwarder)
        app.router.add_get("/api/health", health)

        app["agent_configuration"] = auth_configuration
        app["relay_host"] = self

        app.on_startup.append(lambda app: self.startup())
        app.on_cleanup.append(lambda app: self.cleanup())
        return app

    def start_server(self, auth_configuration: AgentAuthConfiguration | None = None) -> None:
        app = self.create_app(auth_configuration)
        port = self.settings.port

        print("=" * 80)
        print("🔁 Skill Token-Exchange Relay")
        print("=" * 80)
        print(f"🔒 Auth: {'Enabled' if auth_configuration else 'Anonymous'}")
        print(f"🚀 Server: localhost:{port}")
        print(f"💬 Messages: http://localhost:{port}/api/messages")
        print(f"📚 Skill endpoint: http://localhost:{port}/api/skills")
        print(f"❤️  Health: http://localhost:{port}/api/health\n")

        try:
            run_app(app, host="localhost", port=port, handle_signals=True)
        except KeyboardInterrupt:
            print("\n👋 Server stopped")


# --- Public API ---
def create_and_run_host(settings: Optional[Settings] = None) -> None:
    """Create and run a skill relay host"""
    host = SkillRelayHost(settings)
    auth_config = host.create_auth_configuration()
    host.start_server(auth_config)


def main() -> int:
    """Main entry point."""
    configure_logging()
    try:
        create_and_run_host()
        return 0
    except Exception as e:
        logger.exception(f"❌ Failed to start server: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
