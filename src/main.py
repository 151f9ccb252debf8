import argparse
import asyncio
import json
import signal
import yaml
from loguru import logger

from src.config import (
    LOG_LEVEL,
    get_bot_name,
    get_bot_version,
    get_healthcheck_config,
    get_logging_config,
    get_poller_config,
)
from src.errors import AutomationError
from src.notif.formatter import describe_rule, format_summary
from src.utils.logging import setup_logging
from src.storage.db import init_db
from src.storage.repo import RuleRepository
from src.rules.engine import get_poller_engine
from src.utils.healthcheck import get_healthcheck


# Global shutdown event
shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """Handle SIGTERM and SIGINT for graceful shutdown."""
    logger.info(f"Received signal {sig}, initiating graceful shutdown...")
    shutdown_event.set()


def seed_rules(path: str) -> int:
    """Create rules from a YAML list of rule payloads. Returns count created."""
    with open(path, 'r', encoding='utf-8') as f:
        payloads = yaml.safe_load(f) or []

    if not isinstance(payloads, list):
        raise ValueError(f"Seed file must contain a list of rules: {path}")

    repo = RuleRepository()
    created = 0
    for payload in payloads:
        try:
            rule = repo.create_rule(payload)
            logger.info(f"Seeded {rule.id}: {describe_rule(rule)}")
            created += 1
        except AutomationError as e:
            logger.error(f"Skipping invalid rule {payload!r}: {e}")
    return created


def list_rules():
    for rule in RuleRepository().list_rules():
        print(f"{rule.id} [{rule.status.value}] {describe_rule(rule)}")


async def run_once() -> dict:
    summary = await get_poller_engine().run_poll_cycle()
    logger.info(format_summary(summary))
    return summary.to_dict()


async def run_service():
    """
    Main runtime - poller loop plus healthcheck server until shutdown.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {get_bot_name()} v{get_bot_version()}")
    logger.info("=" * 60)

    init_db()
    engine = get_poller_engine()
    logger.info(f"Poller interval: {get_poller_config()['interval_seconds']}s")

    tasks = [
        asyncio.create_task(engine.run(), name="Poller"),
        asyncio.create_task(shutdown_event.wait(), name="ShutdownWatcher"),
    ]
    if get_healthcheck_config()['enabled']:
        tasks.append(asyncio.create_task(get_healthcheck().run(), name="Healthcheck"))

    try:
        # Wait for shutdown signal
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        logger.info("Shutdown signal received, stopping tasks...")
        await engine.stop()

        # Cancel all remaining tasks
        for task in pending:
            task.cancel()

        # Wait for cancellation to complete
        await asyncio.gather(*pending, return_exceptions=True)

    except Exception as e:
        logger.exception(f"Error in main runtime: {e}")


def main():
    parser = argparse.ArgumentParser(description="Rule automation poller")
    parser.add_argument("--init-db", action="store_true", help="Initialize database tables")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and print the summary")
    parser.add_argument("--seed", metavar="FILE", help="Create rules from a YAML file")
    parser.add_argument("--list-rules", action="store_true", help="List stored rules")
    args = parser.parse_args()

    # Setup logging
    log_config = get_logging_config()
    setup_logging(LOG_LEVEL, file_name=log_config['file'], to_file=log_config['to_file'],
                  log_dir=log_config['dir'])

    if args.init_db:
        init_db()
        logger.info("Database initialized")
        return

    if args.seed:
        init_db()
        created = seed_rules(args.seed)
        logger.info(f"Seeded {created} rule(s)")
        return

    if args.list_rules:
        list_rules()
        return

    if args.once:
        init_db()
        result = asyncio.run(run_once())
        print(json.dumps(result, indent=2))
        return

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    finally:
        logger.info("Poller stopped")


if __name__ == "__main__":
    main()
