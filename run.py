#!/usr/bin/env python3
"""
LedgerBank Entry Point

Starts the FastAPI server with settings from LEDGERBANK_* environment
variables (or a .env file).
"""

import sys

import uvicorn

from ledgerbank.api import create_app
from ledgerbank.config import get_config
from ledgerbank.logging_config import get_logger


if __name__ == "__main__":
    config = get_config()
    app = create_app()
    logger = get_logger("ledgerbank")
    logger.info(f"API available at http://{config.api_host}:{config.api_port} (docs at /docs)")

    try:
        uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down LedgerBank")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
