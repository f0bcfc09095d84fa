# Copyright (c) Microsoft. All rights reserved.

"""
PostgreSQL Conversation Store

Durable relay records for hosts running more than one process.

Connection string configurable via PG_DSN env var. Table layout
(under the ``agent_storage`` schema):

    skill_conversations(conversation_id TEXT PRIMARY KEY,
                        record JSONB NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT NOW())
"""

import logging
import time
from typing import Optional

import asyncpg

from skill_relay.storage.base import ConversationRelayRecord, ConversationStore

logger = logging.getLogger(__name__)


class PostgresConversationStore(ConversationStore):
    """Async PostgreSQL store for relay records."""

    SCHEMA = "agent_storage"
    TABLE = "skill_conversations"

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self._pool: Optional[asyncpg.Pool] = pool

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, min_size: int = 1, max_size: int = 10) -> None:
        """Create the connection pool and make sure the table exists."""
        if self._pool is None:
            try:
                t0 = time.monotonic()
                self._pool = await asyncpg.create_pool(
                    self.dsn, min_size=min_size, max_size=max_size
                )
                elapsed = (time.monotonic() - t0) * 1000
                logger.info(f"✅ PostgreSQL connection pool created ({elapsed:.0f}ms)")
            except Exception as e:
                logger.error(f"❌ PostgreSQL connection failed: {e}")
                raise
        await self.ensure_schema()

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self.SCHEMA}")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.SCHEMA}.{self.TABLE} (
                    conversation_id TEXT PRIMARY KEY,
                    record JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    # ------------------------------------------------------------------
    # ConversationStore
    # ------------------------------------------------------------------

    async def get(self, conversation_id: str) -> Optional[ConversationRelayRecord]:
        t0 = time.monotonic()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT record FROM {self.SCHEMA}.{self.TABLE} WHERE conversation_id = $1",
                conversation_id,
            )
        elapsed = (time.monotonic() - t0) * 1000
        if row is None:
            logger.debug(f"🔍 PG relay record {conversation_id}: NOT FOUND ({elapsed:.0f}ms)")
            return None
        logger.debug(f"🔍 PG relay record {conversation_id}: found ({elapsed:.0f}ms)")
        return ConversationRelayRecord.from_json(row["record"])

    async def put(self, conversation_id: str, record: ConversationRelayRecord) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self.SCHEMA}.{self.TABLE} (conversation_id, record)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (conversation_id) DO UPDATE SET record = EXCLUDED.record
                """,
                conversation_id,
                record.to_json(),
            )
        logger.debug(f"📝 PG stored relay record {conversation_id}")

    async def delete(self, conversation_id: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self.SCHEMA}.{self.TABLE} WHERE conversation_id = $1",
                conversation_id,
            )
        return result.endswith("1")
