# =============================================================================
# File: engage/infra/persistence/pg_client.py
# Description: AsyncPG pool helper for the chat group store
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import pathlib
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, List, Optional, Sequence

import asyncpg

from engage.config.pg_client_config import PostgresConfig, get_postgres_config
from engage.config.reliability_config import ReliabilityConfigs
from engage.infra.reliability.retry import retry_async

log = logging.getLogger("engage.infra.persistence.pg_client")

# =============================================================================
# Transaction Context (ContextVar for async context)
# =============================================================================

# Helpers called inside transaction() reuse its connection
_current_transaction_connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
    'transaction_connection', default=None
)

_POOL: Optional[asyncpg.Pool] = None
_POOL_LOCK = asyncio.Lock()
_CONFIG: Optional[PostgresConfig] = None


def get_config() -> PostgresConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = get_postgres_config()
    return _CONFIG


def set_config(config: PostgresConfig) -> None:
    """Override configuration (tests, workers with explicit settings)."""
    global _CONFIG
    _CONFIG = config


# =============================================================================
# Pool lifecycle
# =============================================================================

async def _init_connection(conn: asyncpg.Connection) -> None:
    """JSONB columns come back as dicts and accept dicts."""
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


async def init_db_pool(dsn_or_url: Optional[str] = None, **pool_kwargs: Any) -> asyncpg.Pool:
    """Initialize the global asyncpg pool. Idempotent."""
    global _POOL

    config = get_config()

    async with _POOL_LOCK:
        if _POOL is not None and not _POOL.is_closing():
            return _POOL

        dsn = dsn_or_url or config.get_dsn()
        params = config.to_asyncpg_params()
        params.update({"init": _init_connection, **pool_kwargs})

        log.info(f"Initializing PostgreSQL pool (hidden DSN): {dsn.split('@')[-1]}")

        async def create_pool() -> asyncpg.Pool:
            pool = await asyncpg.create_pool(dsn=dsn, **params)
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return pool

        try:
            _POOL = await retry_async(
                create_pool,
                retry_config=ReliabilityConfigs.postgres_retry(),
                context="PostgreSQL pool initialization"
            )
        except Exception as e:
            log.critical(f"Failed to init PostgreSQL pool: {e}", exc_info=True)
            _POOL = None
            raise RuntimeError(f"PostgreSQL pool init error: {e}") from e

        log.info(f"PostgreSQL pool ready. Min/Max size: {params['min_size']}/{params['max_size']}")

    return _POOL


async def get_pool(ensure_initialized: bool = True) -> asyncpg.Pool:
    if _POOL is None or _POOL.is_closing():
        if not ensure_initialized:
            raise RuntimeError("PostgreSQL pool is not initialized")
        return await init_db_pool()
    return _POOL


async def close_db_pool() -> None:
    global _POOL
    async with _POOL_LOCK:
        if _POOL is not None:
            await _POOL.close()
            log.info("PostgreSQL pool closed")
        _POOL = None


@asynccontextmanager
async def acquire_connection() -> AsyncIterator[asyncpg.Connection]:
    """Acquire a pooled connection, retrying transient acquisition failures."""
    pool = await get_pool()
    conn = await retry_async(
        pool.acquire,
        retry_config=ReliabilityConfigs.postgres_retry(),
        context="PostgreSQL connection acquisition"
    )
    try:
        yield conn
    finally:
        await pool.release(conn)


# =============================================================================
# Query helpers
# =============================================================================

def _log_if_slow(kind: str, query: str, started: float) -> None:
    elapsed_ms = (time.monotonic() - started) * 1000
    if elapsed_ms > get_config().slow_query_threshold_ms:
        log.warning(f"[SLOW QUERY] {kind} took {elapsed_ms:.1f}ms: {query[:200]}")


@asynccontextmanager
async def _connection() -> AsyncIterator[asyncpg.Connection]:
    transaction_conn = _current_transaction_connection.get()
    if transaction_conn is not None:
        yield transaction_conn
        return
    async with acquire_connection() as conn:
        yield conn


async def fetch(query: str, *args: Any, timeout: Optional[float] = None) -> List[asyncpg.Record]:
    started = time.monotonic()
    async with _connection() as conn:
        rows = await conn.fetch(query, *args, timeout=timeout)
    _log_if_slow("FETCH", query, started)
    return rows


async def fetchrow(query: str, *args: Any, timeout: Optional[float] = None) -> Optional[asyncpg.Record]:
    started = time.monotonic()
    async with _connection() as conn:
        row = await conn.fetchrow(query, *args, timeout=timeout)
    _log_if_slow("FETCHROW", query, started)
    return row


async def fetchval(query: str, *args: Any, column: int = 0, timeout: Optional[float] = None) -> Any:
    started = time.monotonic()
    async with _connection() as conn:
        value = await conn.fetchval(query, *args, column=column, timeout=timeout)
    _log_if_slow("FETCHVAL", query, started)
    return value


async def execute(query: str, *args: Any, timeout: Optional[float] = None) -> str:
    started = time.monotonic()
    async with _connection() as conn:
        status = await conn.execute(query, *args, timeout=timeout)
    _log_if_slow("EXECUTE", query, started)
    return status


async def executemany(query: str, args: Sequence[Sequence[Any]], timeout: Optional[float] = None) -> None:
    started = time.monotonic()
    async with _connection() as conn:
        await conn.executemany(query, args, timeout=timeout)
    _log_if_slow("EXECUTEMANY", query, started)


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


@asynccontextmanager
async def transaction(timeout: Optional[float] = None) -> AsyncIterator[asyncpg.Connection]:
    """
    Transaction context manager.

    Usage:
        async with transaction() as conn:
            await conn.execute("INSERT INTO ...")

    Commits on clean exit, rolls back on exception. Module helpers called
    inside the block run on the same connection.
    """
    pool = await get_pool()
    conn = await pool.acquire(timeout=timeout)
    token = _current_transaction_connection.set(conn)
    try:
        async with conn.transaction():
            yield conn
    except Exception as e:
        log.error(f"Transaction failed: {e}")
        raise
    finally:
        _current_transaction_connection.reset(token)
        await pool.release(conn)


async def run_schema_from_file(file_path_str: Optional[str] = None) -> None:
    """Execute DDL statements from a SQL file."""
    file_path_str = file_path_str or get_config().schema_file
    path = pathlib.Path(file_path_str)
    if not path.is_file():
        raise FileNotFoundError(f"Schema file not found: {file_path_str}")

    sql = path.read_text(encoding="utf-8").strip()
    if not sql:
        log.warning(f"Schema file {file_path_str} is empty")
        return

    async def execute_schema() -> None:
        async with acquire_connection() as conn:
            await conn.execute(sql)

    await retry_async(
        execute_schema,
        retry_config=ReliabilityConfigs.postgres_retry(),
        context=f"schema execution from {file_path_str}"
    )
    log.info(f"Schema from {file_path_str} applied successfully")
