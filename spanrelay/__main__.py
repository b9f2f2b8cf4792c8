"""
Run the SpanRelay collector: `python -m spanrelay` or `spanrelay-collector`.
Configuration comes from environment variables, optionally from a .env file.
"""

import asyncio
import logging
import os

from dotenv import load_dotenv

from .config import CollectorConfig
from .constants import LOG_TAG
from .ingest_server import serve

logger = logging.getLogger(LOG_TAG)


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("SPANRELAY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    config = CollectorConfig.from_env()
    logger.info(f"Starting collector: {config.describe()}")
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        # only reached where signal handlers could not be installed
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
