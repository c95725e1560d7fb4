#!/usr/bin/env python3
"""
Cartera Entry Point

Starts the FastAPI server for the installment financing and payment
allocation engine.
"""

import sys

from cartera.api import run_server
from cartera.config import get_config
from cartera.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info("Starting Cartera API on %s:%s (storage: %s)",
                config.api_host, config.api_port, config.storage_backend)

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        logger.info("Shutting down Cartera API")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)
