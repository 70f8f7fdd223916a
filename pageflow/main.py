"""
PageFlow Worker Entry Point

Starts the split and page workers against the configured backends.

Run with:
    python -m pageflow.main                       # both queues
    python -m pageflow.main --queues process-page # page workers only
    python -m pageflow.main --check               # test backend connections
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import asyncpg
from redis.exceptions import RedisError

from .config import DatabaseConfig, PipelineSettings
from .models import PAGE_QUEUE, SPLIT_QUEUE
from .pipeline import DocumentPipeline
from .rate_limiter import create_redis_client

logger = logging.getLogger(__name__)


async def check_connections(settings: PipelineSettings) -> bool:
    """Connect to each configured backend once and report the result."""
    ok = True

    db_config = DatabaseConfig.from_env()
    if db_config.is_configured:
        try:
            conn = await asyncpg.connect(db_config.database_url)
            try:
                version = await conn.fetchval("SELECT version()")
            finally:
                await conn.close()
            logger.info(f"PostgreSQL OK: {version}")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"PostgreSQL connection FAILED: {e}")
            ok = False
    else:
        logger.info("PostgreSQL not configured (in-memory workflow store)")

    if settings.redis_url:
        client = create_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds)
        try:
            await client.ping()
            logger.info("Redis OK")
        except (RedisError, OSError) as e:
            logger.error(f"Redis connection FAILED: {e}")
            ok = False
        finally:
            await client.aclose()
    else:
        logger.info("Redis not configured (in-memory job queue and rate limiter)")

    return ok


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run PageFlow pipeline workers")
    parser.add_argument(
        "--queues",
        default=f"{SPLIT_QUEUE},{PAGE_QUEUE}",
        help="Comma-separated queues to consume (default: both)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--check", action="store_true", help="Test backend connections and exit")
    args = parser.parse_args(argv)

    args.queues = [q.strip() for q in args.queues.split(",") if q.strip()]
    unknown = set(args.queues) - {SPLIT_QUEUE, PAGE_QUEUE}
    if unknown:
        parser.error(f"unknown queue(s): {', '.join(sorted(unknown))}")
    return args


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = PipelineSettings.from_env()

    if args.check:
        return 0 if await check_connections(settings) else 1

    pipeline = await DocumentPipeline.from_settings(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    logger.info(f"Starting workers for queues: {', '.join(args.queues)}")
    try:
        await pipeline.run(stop_event, queues=tuple(args.queues))
    finally:
        logger.debug(f"Metrics at shutdown:\n{pipeline.export_metrics()}")
        await pipeline.close()
    return 0


def run():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
