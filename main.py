"""
Main entrypoint: FastAPI server whose lifespan runs the donation watcher.

The lifespan bootstraps the WatcherService from the environment (see .env)
and runs its timers on the server's event loop; shutting the server down
stops the watcher. Missing required settings abort startup.

Env: EON_RPC_URL, EON_OPERATOR_PRIVATE_KEY, EON_CONTRACT_ADDRESS, USDC_CONTRACT_ADDRESS,
WETH_CONTRACT_ADDRESS, DATABASE_URL, EVENT_SOURCE_MODE, API_HOST, API_PORT, etc.
"""

import os
import sys

# Configure structured JSON logging before other imports that may log
from backend_eon.eon_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Validate settings, then run the API (and watcher) in the main thread."""
    from backend_eon.config.settings import get_settings
    from backend_eon.core.exceptions import ConfigurationError

    settings = get_settings()
    try:
        settings.require_chain()
    except ConfigurationError as e:
        logger.error("main_config_error", error=str(e))
        sys.exit(1)

    from backend_eon.api_server.server import app
    import uvicorn

    logger.info(
        "main_server_starting",
        host=settings.api_host,
        port=settings.api_port,
        source=settings.event_source_mode,
    )
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
