from __future__ import annotations

import logging

import psycopg

from n8n_webhook_watcher.connection import ConnectionManager
from n8n_webhook_watcher.dispatcher import WebhookDispatcher
from n8n_webhook_watcher.errors import ChangeCaptureInstallError, WatcherStartupError
from n8n_webhook_watcher.models import Notification
from n8n_webhook_watcher.reconnect import ReconnectPolicy

LOGGER = logging.getLogger(__name__)


class WebhookWatcher:
    """Relay loop: LISTEN on the channel, POST each change, reconnect on loss.

    Notifications are dispatched one at a time in arrival order; the next one is not
    read until the previous webhook call has finished.
    """

    def __init__(
        self,
        *,
        connection: ConnectionManager,
        dispatcher: WebhookDispatcher,
        reconnect_policy: ReconnectPolicy,
    ) -> None:
        self._connection = connection
        self._dispatcher = dispatcher
        self._reconnect_policy = reconnect_policy

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    async def start(self) -> None:
        try:
            await self._connection.connect()
            await self._connection.start_listening()
        except (psycopg.Error, OSError, ChangeCaptureInstallError) as exc:
            LOGGER.error("startup_failed", extra={"error": str(exc)})
            raise WatcherStartupError(str(exc)) from exc

        self._reconnect_policy.reset()
        LOGGER.info(
            "watcher_running",
            extra={"channel": self._connection.channel, "webhook_url": self._dispatcher.url},
        )

    async def run(self) -> None:
        """Run until cancelled or until reconnecting is abandoned.

        Raises WatcherStartupError or ReconnectExhaustedError; the connection is
        cleaned up on every exit path.
        """

        try:
            await self.start()
            while True:
                await self._consume()
                await self._reconnect_policy.reconnect(self._connection)
        finally:
            await self._connection.cleanup()

    async def _consume(self) -> None:
        async for event in self._connection.events():
            if isinstance(event, Notification):
                await self._dispatcher.handle_notification(event.payload)
