"""Entry point: python -m mmbridge"""

import asyncio
import logging
import sys

from mmbridge.app import run_bridge
from mmbridge.config import Config
from mmbridge.errors import ConfigError
from mmbridge.logging_config import setup_logging

logger = logging.getLogger("mmbridge")


def main() -> None:
    setup_logging()
    try:
        config = Config.from_env()
        if not config.enabled:
            logger.info("Mattermost bot disabled (MM_BOT_ENABLED=false), exiting")
            sys.exit(0)
        config.validate()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e.message)
        sys.exit(1)

    logger.info("Configuration loaded")
    logger.info("  Server: %s", config.server_url)
    logger.info("  Channel: %s", config.channel_id or f"{config.team_name}/{config.channel_name}")
    logger.info("  Assistant: %s", " ".join(config.assistant_argv()))
    logger.info("  End marker: %s", config.end_marker or "(idle heuristic)")

    try:
        code = asyncio.run(run_bridge(config))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
