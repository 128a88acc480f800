import asyncio
import logging

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging()

import uvicorn

import config
import database
from app.api import create_app
from app.api.dependencies import build_services
from app.core.rate_limiter import create_queue_rate_limiter
from app.core.redis_client import check_redis_health, close_redis_client, get_redis_client
from app.core.structured_logger import log_event
from app.services.positions import Lane
from referral_worker import ReferralJobProcessor, ReferralWorker

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
#
# Standard log fields (logical, not enforced by library):
# - component        (http / worker / queue / signup / allocator / infra)
# - operation        (what is happening)
# - correlation_id   (request id or job iteration id)
# - outcome          (success | degraded | failed)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# CORRELATION IDS:
# - HTTP: X-Request-ID header or a generated UUID, set by middleware
# - Workers: generated per job and per maintenance iteration
#
# SECURITY:
# - DO NOT log secrets, session ids, or attribution tokens
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL_SECONDS = 30


async def seed_counters(services):
    """Recover counters that fell behind stored records (restored backup, manual inserts)."""
    for lane in (Lane.REGULAR, Lane.KOL):
        try:
            await services.allocator.seed_from_existing(lane)
        except Exception as e:
            logger.warning(f"Counter seeding skipped for lane {lane.value}: {type(e).__name__}: {e}")


async def main():
    log_event(logger, component="startup", operation="startup_begin", outcome="success", reason=f"env={config.APP_ENV}")

    # ====================================================================================
    # SAFE STARTUP GUARD: the HTTP server always starts, even when the DB is down.
    # Requests needing the DB answer 503 until init succeeds.
    # ====================================================================================
    try:
        success = await database.init_db()
        if success:
            logger.info("Database initialized")
        else:
            logger.error("DB INIT FAILED: RUNNING IN DEGRADED MODE")
    except Exception as e:
        logger.exception("DB INIT FAILED: RUNNING IN DEGRADED MODE")
        logger.error(f"Database initialization error: {type(e).__name__}: {e}")
        database.DB_READY = False

    redis_client = await get_redis_client()
    if redis_client is None:
        logger.warning("Redis not configured: sessions, queue and status polling unavailable")
    elif not await check_redis_health():
        logger.warning("Redis configured but not answering; will retry on first use")

    services = build_services(database, redis_client)
    kol_count = await services.kol_index.load()
    logger.info(f"KOL list loaded: {kol_count} entries")

    if database.DB_READY:
        await seed_counters(services)

    worker = None
    if config.WORKER_ENABLED and redis_client is not None:
        processor = ReferralJobProcessor(
            signup=services.signup,
            allocator=services.allocator,
            queue=services.queue,
            rate_limiter=create_queue_rate_limiter(redis_client, config.QUEUE_NAME),
        )
        worker = ReferralWorker(processor)
        worker.start()
    else:
        logger.info("Referral worker disabled")

    background_tasks = []

    async def retry_db_init():
        """Retry init_db every DB_RETRY_INTERVAL_SECONDS until it succeeds."""
        while not database.DB_READY:
            await asyncio.sleep(DB_RETRY_INTERVAL_SECONDS)
            logger.info("Retrying database initialization...")
            try:
                if await database.init_db():
                    logger.info("DATABASE RECOVERY SUCCESSFUL: RESUMING FULL FUNCTIONALITY")
                    await seed_counters(services)
                    break
                logger.warning("Database initialization retry failed, will retry later")
            except Exception as e:
                logger.warning(f"Database initialization retry error: {type(e).__name__}: {e}")
                logger.debug("Full retry error details:", exc_info=True)

    if not database.DB_READY:
        background_tasks.append(asyncio.create_task(retry_db_init()))
        logger.info(f"DB retry task started (will retry every {DB_RETRY_INTERVAL_SECONDS} seconds until DB is ready)")

    app = create_app(services)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.HTTP_HOST,
            port=config.HTTP_PORT,
            log_config=None,
            access_log=False,
        )
    )

    try:
        log_event(logger, component="startup", operation="http_server_start", outcome="success", reason=f"port={config.HTTP_PORT}")
        await server.serve()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        if worker is not None:
            await worker.stop()

        for task in background_tasks:
            if not task.done():
                task.cancel()
        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        await close_redis_client()

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service stopped")
