from __future__ import annotations

import logging

from smartchat.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; uvicorn/pytest may already have attached handlers.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep HTTP client chatter out of request logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
