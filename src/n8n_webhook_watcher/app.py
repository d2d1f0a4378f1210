from __future__ import annotations

import asyncio
import logging
import os
import signal

import httpx
from pydantic import ValidationError

from n8n_webhook_watcher.capture import CHANNEL
from n8n_webhook_watcher.connection import ConnectionManager
from n8n_webhook_watcher.dispatcher import WebhookDispatcher
from n8n_webhook_watcher.errors import WatcherError
from n8n_webhook_watcher.reconnect import ReconnectPolicy
from n8n_webhook_watcher.settings import Settings
from n8n_webhook_watcher.watcher import WebhookWatcher

LOGGER = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_watcher(settings: Settings, http_client: httpx.AsyncClient) -> WebhookWatcher:
    return WebhookWatcher(
        connection=ConnectionManager(conninfo=settings.postgres_conninfo, channel=CHANNEL),
        dispatcher=WebhookDispatcher(
            client=http_client,
            url=settings.webhook_url,
            timeout_s=settings.webhook_timeout_s,
            headers=settings.auth_headers,
            debug=settings.debug,
        ),
        reconnect_policy=ReconnectPolicy(
            max_attempts=settings.max_reconnect_attempts,
            delay_s=settings.reconnect_delay_s,
        ),
    )


async def run() -> int:
    """Run the relay and return the process exit code."""

    configure_logging()
    try:
        settings = Settings()
    except ValidationError as exc:
        LOGGER.error("invalid_configuration %s", exc)
        return 1

    LOGGER.info(
        "service_start",
        extra={
            "webhook_url": settings.webhook_url,
            "channel": CHANNEL,
            "db_host": settings.db_host,
            "db_name": settings.db_name,
        },
    )

    async with httpx.AsyncClient() as http_client:
        watcher = build_watcher(settings, http_client)
        return await run_until_shutdown(watcher)


async def run_until_shutdown(watcher: WebhookWatcher) -> int:
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(watcher.run(), name="webhook_watcher")
    received: list[signal.Signals] = []

    def _request_shutdown(sig: signal.Signals) -> None:
        LOGGER.info("shutdown_signal_received", extra={"signal": sig.name})
        received.append(sig)
        task.cancel()

    for sig in _SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _request_shutdown, sig)

    try:
        await task
    except asyncio.CancelledError:
        if not received:
            raise
        LOGGER.info("service_stopped")
        return 0
    except WatcherError:
        LOGGER.exception("service_failed")
        return 1
    finally:
        for sig in _SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    # run() only returns when cancelled, so reaching here means it stopped unexpectedly.
    LOGGER.error("watcher_stopped_unexpectedly")
    return 1
