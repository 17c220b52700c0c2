# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail outbox.

Handlers, level and format are configured once via ``logging.basicConfig()``
in the entry point (``server.py`` or ``cli.py serve``) to avoid duplicate
handlers.

Example:
    Typical usage in a module::

        from mail_outbox.logger import get_logger

        logger = get_logger("MailOutbox")
        logger.info("Delivery started")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailOutbox") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "MailOutbox".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name; falls back to ``OUTBOX_LOG_LEVEL`` then INFO.
    """
    level_name = (level or os.getenv("OUTBOX_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
