"""Mastery Workers: background job processor for tiered recommendations."""

import asyncio
import logging

from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .rules import default_rules
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)

    logger.info("Mastery worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Registered job types: %s", registered_types())
    logger.info("Tier 0 rules: %s", [r.rule_id for r in default_rules() if r.enabled])
    if config.tier2_available:
        logger.info("Tier 2 enabled (model=%s)", config.tier2_model)
    else:
        logger.info("Tier 2 disabled, model stage will be skipped")

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    logger = logging.getLogger(__name__)

    health_server = await start_health_server(
        config.health_port, config.database_url, tier2_available=config.tier2_available
    )
    logger.info("Health server started")

    try:
        worker = Worker(config)
        await worker.run()
    finally:
        health_server.close()
        await health_server.wait_closed()


if __name__ == "__main__":
    main()
