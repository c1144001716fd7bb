from __future__ import annotations

import asyncio
import logging
from typing import Callable

from arq.connections import ArqRedis
from redis.asyncio import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff

from estatejobs.core.config import get_settings
from estatejobs.services.queue.config import EnvLike, resolve_queue_runtime_config


logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str], ArqRedis]


def create_queue_redis_connection(redis_url: str) -> ArqRedis:
    # No transparent retries: broker loss surfaces to callers, which decide whether to fall back.
    timeout_s = get_settings().queue_connect_timeout_s
    pool = ConnectionPool.from_url(
        redis_url,
        retry=Retry(NoBackoff(), 0),
        retry_on_timeout=False,
        socket_connect_timeout=timeout_s,
        socket_timeout=timeout_s,
    )
    return ArqRedis(pool_or_conn=pool)


class QueueConnectionManager:
    """Owns the single broker connection shared by queues and workers of one process."""

    def __init__(self, factory: ConnectionFactory | None = None) -> None:
        self._factory = factory or create_queue_redis_connection
        self._connection: ArqRedis | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def get_connection(self, env: EnvLike | None = None) -> ArqRedis:
        try:
            current_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None
        if self._connection is not None and current_loop is not None and self._loop not in (None, current_loop):
            # Drop loop-bound pools to avoid cross-loop errors in tests.
            self._connection = None
        if self._connection is None:
            self._connection = self._factory(resolve_queue_runtime_config(env).redis_url)
            self._loop = current_loop
        return self._connection

    async def close(self) -> None:
        if self._connection is None:
            return
        # Clear first so a concurrent close sees "already closed" and get_connection builds a new one.
        connection = self._connection
        self._connection = None
        self._loop = None
        try:
            await connection.aclose()
        except Exception:  # noqa: BLE001 - fall back to a forceful disconnect
            logger.warning("queue.connection.close_failed; forcing disconnect", exc_info=True)
            try:
                await connection.connection_pool.disconnect(inuse_connections=True)
            except Exception:  # noqa: BLE001 - the connection is already dropped from the manager
                logger.error("queue.connection.disconnect_failed", exc_info=True)
