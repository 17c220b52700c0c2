# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point.

Builds a :class:`MailOutbox` from the configuration file and wires its
lifecycle to the application lifespan: delivery starts with the server and
is stopped, bounded by ``shutdown_timeout``, when the server shuts down.

Usage:
    uvicorn mail_outbox.server:build_app --factory --host 0.0.0.0 --port 8000

Environment variables:
    OUTBOX_CONFIG: Path to the INI configuration file (default: config.ini)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from .api import create_app
from .config_loader import SettingsMonitor, load_service_settings
from .core import MailOutbox


def build_outbox(config_path: str | Path | None = None) -> tuple[MailOutbox, str | None]:
    """Create the outbox described by the configuration file.

    Returns:
        The outbox and the API token protecting the HTTP interface.
    """
    service_settings = load_service_settings(config_path)
    outbox = MailOutbox(
        db_path=service_settings.db_path,
        settings=SettingsMonitor(config_path),
        shutdown_timeout=service_settings.shutdown_timeout,
    )
    return outbox, service_settings.api_token


def build_app(config_path: str | Path | None = None) -> FastAPI:
    """Application factory used by uvicorn and ``mail-outbox serve``."""
    outbox, api_token = build_outbox(config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start delivery with the server, stop it on shutdown."""
        await outbox.start()
        yield
        await outbox.stop()

    return create_app(outbox, api_token=api_token, lifespan=lifespan)
