import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import asyncpg

import config
from app.core.exceptions import DependencyUnavailableError, RecordAlreadyExistsError
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: database readiness flag
# ====================================================================================
# False until init_db() has connected and applied migrations. While False every
# query raises DependencyUnavailableError (sign-in degrades to deferred processing).
# ====================================================================================
DB_READY: bool = False

DATABASE_URL = config.DATABASE_URL


# ====================================================================================
# DB POOL CONFIG: ENV-overridable, single source of truth
# ====================================================================================
def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs. Single source of truth for all pool creation."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "15")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


if not DATABASE_URL:
    if config.IS_PROD:
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    else:
        logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None

# Unique constraint name -> logical field (see migrations/001_initial_schema.sql)
_UNIQUE_FIELDS = {
    "referrals_identity_key": "identity",
    "referrals_referral_code_key": "referral_code",
    "referrals_position_key": "position",
    "wallets_pkey": "identity",
    "users_pkey": "identity",
}


async def get_pool() -> asyncpg.Pool:
    """
    Get the connection pool, creating it on first use.

    - DB not configured -> DependencyUnavailableError
    - Transient errors during creation are retried once with backoff
    """
    global _pool
    if not DATABASE_URL:
        raise DependencyUnavailableError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        _pool = await retry_async(
            lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
            retries=1,
            base_delay=0.5,
            max_delay=5.0,
            retry_on=(asyncpg.PostgresError, OSError),
        )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


@asynccontextmanager
async def _connection() -> AsyncIterator[asyncpg.Connection]:
    """
    Acquire a pooled connection; acquisition is retried on transient errors.

    Raises:
        DependencyUnavailableError: init_db() has not succeeded
    """
    if not DB_READY:
        raise DependencyUnavailableError("database not ready")
    pool = await get_pool()
    conn = await retry_async(
        lambda: pool.acquire(),
        retries=2,
        base_delay=0.5,
        max_delay=2.0,
        retry_on=(asyncpg.PostgresError, asyncio.TimeoutError, OSError),
    )
    try:
        yield conn
    finally:
        await pool.release(conn)


def _unique_violation(e: asyncpg.UniqueViolationError) -> RecordAlreadyExistsError:
    constraint = getattr(e, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, constraint or "unknown")
    return RecordAlreadyExistsError(field)


async def init_db() -> bool:
    """
    Connect, create the pool and apply migrations.

    Returns:
        True if the database is ready, False otherwise (caller runs degraded
        and may retry later). Idempotent.
    """
    global DB_READY, _pool

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured")
        return False

    try:
        conn = await asyncpg.connect(DATABASE_URL)
        await conn.execute("SELECT 1")
        await conn.close()
        logger.info("DB connectivity probe successful")
    except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"DB connectivity probe failed: {type(e).__name__}: {e}")
        return False

    pool_config = _get_pool_config()
    try:
        _pool = await asyncpg.create_pool(DATABASE_URL, **pool_config)
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Failed to create database pool: {e}")
        return False

    await asyncio.sleep(0)

    import migrations
    if not await migrations.run_migrations_safe(_pool):
        logger.error("Migration execution failed")
        return False
    logger.info("Database migrations applied successfully")

    # Schema changes can invalidate cached prepared statements; a fresh pool clears them
    await _pool.close()
    _pool = await asyncpg.create_pool(DATABASE_URL, **pool_config)
    logger.info(
        "DB_POOL_RECREATED_AFTER_MIGRATIONS min=%s max=%s",
        pool_config["min_size"], pool_config["max_size"],
    )

    DB_READY = True
    return True


# ====================================================================================
# COUNTERS
# ====================================================================================

async def increment_counter(counter_id: str, floor: int = 0) -> int:
    """
    Atomically increment a named counter and return the new value.

    An absent counter, or one below `floor`, is raised to `floor` first, so the
    first value returned is floor + 1. A single statement: safe under any
    number of concurrent callers.
    """
    async with _connection() as conn:
        return await conn.fetchval(
            """
            INSERT INTO counters (id, sequence, updated_at)
            VALUES ($1, $2::bigint + 1, NOW())
            ON CONFLICT (id) DO UPDATE
                SET sequence = GREATEST(counters.sequence, $2::bigint) + 1,
                    updated_at = NOW()
            RETURNING sequence
            """,
            counter_id, floor,
        )


async def advance_counter(counter_id: str, value: int) -> int:
    """
    Move a counter forward to at least `value`. Never lowers it.

    Returns:
        The counter value after the write.
    """
    async with _connection() as conn:
        return await conn.fetchval(
            """
            INSERT INTO counters (id, sequence, updated_at)
            VALUES ($1, $2::bigint, NOW())
            ON CONFLICT (id) DO UPDATE
                SET sequence = GREATEST(counters.sequence, EXCLUDED.sequence),
                    updated_at = NOW()
            RETURNING sequence
            """,
            counter_id, value,
        )


async def get_counter_value(counter_id: str) -> Optional[int]:
    async with _connection() as conn:
        return await conn.fetchval("SELECT sequence FROM counters WHERE id = $1", counter_id)


# ====================================================================================
# REFERRAL RECORDS
# ====================================================================================

async def insert_referral(
    identity: str,
    referral_code: str,
    position: int,
    is_kol: bool,
    referred_by: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Insert a referral record.

    Raises:
        RecordAlreadyExistsError: identity, referral_code or position is taken
            (`field` tells which)
    """
    async with _connection() as conn:
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO referrals (identity, referral_code, position, is_kol, referred_by)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                identity, referral_code, position, is_kol, referred_by,
            )
        except asyncpg.UniqueViolationError as e:
            raise _unique_violation(e) from e
        return dict(row)


async def get_referral_by_identity(identity: str) -> Optional[Dict[str, Any]]:
    async with _connection() as conn:
        row = await conn.fetchrow("SELECT * FROM referrals WHERE identity = $1", identity)
        return dict(row) if row else None


async def get_referral_by_code(referral_code: str) -> Optional[Dict[str, Any]]:
    async with _connection() as conn:
        row = await conn.fetchrow("SELECT * FROM referrals WHERE referral_code = $1", referral_code)
        return dict(row) if row else None


async def referral_code_exists(referral_code: str) -> bool:
    async with _connection() as conn:
        return await conn.fetchval(
            "SELECT EXISTS (SELECT 1 FROM referrals WHERE referral_code = $1)", referral_code
        )


async def increment_referral_count(identity: str) -> bool:
    """Returns True if a record was updated."""
    async with _connection() as conn:
        result = await conn.execute(
            """
            UPDATE referrals
            SET referral_count = referral_count + 1, updated_at = NOW()
            WHERE identity = $1
            """,
            identity,
        )
        return result == "UPDATE 1"


async def increment_link_visits(referral_code: str) -> bool:
    """Returns True if a record was updated."""
    async with _connection() as conn:
        result = await conn.execute(
            """
            UPDATE referrals
            SET link_visits = link_visits + 1, updated_at = NOW()
            WHERE referral_code = $1
            """,
            referral_code,
        )
        return result == "UPDATE 1"


async def get_max_position(
    min_position: int,
    max_position: Optional[int] = None,
    is_kol: Optional[bool] = None,
) -> Optional[int]:
    """Highest assigned position within [min_position, max_position], optionally filtered by lane."""
    async with _connection() as conn:
        return await conn.fetchval(
            """
            SELECT MAX(position) FROM referrals
            WHERE position >= $1
              AND ($2::bigint IS NULL OR position <= $2::bigint)
              AND ($3::boolean IS NULL OR is_kol = $3::boolean)
            """,
            min_position, max_position, is_kol,
        )


async def count_referrals() -> int:
    async with _connection() as conn:
        return await conn.fetchval("SELECT COUNT(*) FROM referrals")


# ====================================================================================
# USER PROFILES
# ====================================================================================

async def upsert_user(
    identity: str,
    handle: Optional[str],
    display_name: Optional[str],
    avatar_url: Optional[str],
    follower_count: int,
) -> Tuple[Dict[str, Any], bool]:
    """
    Insert or refresh a user profile.

    Returns:
        (user row, inserted) where inserted is True only for the first sign-in.
    """
    async with _connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO users (identity, handle, display_name, avatar_url, follower_count)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (identity) DO UPDATE
                SET handle = EXCLUDED.handle,
                    display_name = EXCLUDED.display_name,
                    avatar_url = EXCLUDED.avatar_url,
                    follower_count = EXCLUDED.follower_count,
                    updated_at = NOW()
            RETURNING *, (xmax = 0) AS inserted
            """,
            identity, handle, display_name, avatar_url, follower_count,
        )
        user = dict(row)
        inserted = bool(user.pop("inserted"))
        return user, inserted


async def insert_user_if_absent(
    identity: str,
    handle: Optional[str],
    display_name: Optional[str],
    avatar_url: Optional[str],
    follower_count: int,
) -> Tuple[Dict[str, Any], bool]:
    """
    Insert a user profile unless one is already stored. An existing row is left as is.

    Returns:
        (user row, inserted)
    """
    async with _connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO users (identity, handle, display_name, avatar_url, follower_count)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (identity) DO NOTHING
            RETURNING *
            """,
            identity, handle, display_name, avatar_url, follower_count,
        )
        if row is not None:
            return dict(row), True
        row = await conn.fetchrow("SELECT * FROM users WHERE identity = $1", identity)
        return dict(row), False


async def get_user(identity: str) -> Optional[Dict[str, Any]]:
    async with _connection() as conn:
        row = await conn.fetchrow("SELECT * FROM users WHERE identity = $1", identity)
        return dict(row) if row else None


async def set_signup_state(identity: str, state: str) -> None:
    async with _connection() as conn:
        await conn.execute(
            "UPDATE users SET signup_state = $2, updated_at = NOW() WHERE identity = $1",
            identity, state,
        )


async def touch_last_login(identity: str) -> None:
    async with _connection() as conn:
        await conn.execute("UPDATE users SET last_login_at = NOW() WHERE identity = $1", identity)


# ====================================================================================
# WALLETS
# ====================================================================================

async def insert_wallet(identity: str, address: str, chain_type: str) -> Dict[str, Any]:
    """
    Store the identity's wallet. Write-once.

    Raises:
        RecordAlreadyExistsError: the identity already has a wallet
    """
    async with _connection() as conn:
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO wallets (identity, address, chain_type)
                VALUES ($1, $2, $3)
                RETURNING *
                """,
                identity, address, chain_type,
            )
        except asyncpg.UniqueViolationError as e:
            raise _unique_violation(e) from e
        return dict(row)


async def get_wallet(identity: str) -> Optional[Dict[str, Any]]:
    async with _connection() as conn:
        row = await conn.fetchrow("SELECT * FROM wallets WHERE identity = $1", identity)
        return dict(row) if row else None
