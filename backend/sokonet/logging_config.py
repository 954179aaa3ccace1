"""
Centralized logging configuration.

One stdout handler with a process-tagged format on the application logger.
The app logger is named ``sokonet``, so module loggers such as
``sokonet.services.gateway_client`` propagate into the same handler.
"""

import logging
import sys

from flask.logging import default_handler

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def configure_logging(app) -> None:
    """
    Configure logging for the application.

    - Level comes from LOG_LEVEL (default INFO)
    - Console output (stdout) so container runtimes collect it
    - Reduced verbosity for the HTTP client libraries
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)

    logger = app.logger
    logger.removeHandler(default_handler)
    logger.setLevel(level)

    if not any(getattr(h, "sokonet_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.sokonet_handler = True
        logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
