from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import psycopg

from n8n_webhook_watcher.capture import CHANNEL, install_change_capture
from n8n_webhook_watcher.models import (
    ConnectionEnded,
    ConnectionLost,
    ConnectionState,
    ListenerEvent,
    Notification,
)

LOGGER = logging.getLogger(__name__)

_CLEANUP_TIMEOUT_S = 5.0


def transition(state: ConnectionState, event: ListenerEvent) -> ConnectionState:
    """Next connection state after a listener event.

    Notifications never change the state; any loss or end of the session means the
    connection must be re-established before more notifications can arrive.
    """

    if isinstance(event, Notification):
        return state
    if state is ConnectionState.FAILED:
        return state
    return ConnectionState.DISCONNECTED


class ConnectionManager:
    """Owns the single LISTEN connection and its lifecycle state."""

    def __init__(self, *, conninfo: str, channel: str = CHANNEL) -> None:
        self._conninfo = conninfo
        self._channel = channel
        self._connection: psycopg.AsyncConnection[Any] | None = None
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel(self) -> str:
        return self._channel

    async def connect(self) -> None:
        """Open a new connection and install the change capture objects on it.

        Any previous handle is discarded. Raises psycopg.Error when the database is
        unreachable and ChangeCaptureInstallError when the trigger cannot be installed.
        """

        await self._discard_connection()
        self._state = ConnectionState.CONNECTING
        LOGGER.info("database_connect_start")
        try:
            connection = await psycopg.AsyncConnection.connect(
                conninfo=self._conninfo,
                autocommit=True,
            )
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._connection = connection
        LOGGER.info("database_connected")

        try:
            await install_change_capture(connection)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            await self._discard_connection()
            raise

    async def start_listening(self) -> None:
        if self._connection is None:
            raise RuntimeError("connect() must succeed before start_listening()")

        try:
            async with self._connection.cursor() as cursor:
                await cursor.execute(f"LISTEN {self._channel}")
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._state = ConnectionState.LISTENING
        LOGGER.info("listening", extra={"channel": self._channel})

    async def events(self) -> AsyncIterator[ListenerEvent]:
        """Yield notifications until the session fails or ends.

        The final event is always ConnectionLost or ConnectionEnded.
        """

        if self._connection is None:
            raise RuntimeError("connect() must succeed before events()")

        final_event: ListenerEvent
        try:
            async for notify in self._connection.notifies():
                if notify.channel != self._channel:
                    continue
                yield Notification(payload=notify.payload)
        except psycopg.Error as exc:
            LOGGER.error("database_connection_error", extra={"error": str(exc)})
            final_event = ConnectionLost(error=exc)
        else:
            LOGGER.warning("database_connection_ended")
            final_event = ConnectionEnded()

        self._state = transition(self._state, final_event)
        yield final_event

    def begin_reconnect(self) -> None:
        self._state = ConnectionState.RECONNECTING

    def mark_failed(self) -> None:
        self._state = ConnectionState.FAILED

    async def cleanup(self) -> None:
        """Best-effort UNLISTEN and close; errors are logged, never raised."""

        connection = self._connection
        self._connection = None
        if self._state is not ConnectionState.FAILED:
            self._state = ConnectionState.DISCONNECTED
        if connection is None or connection.closed:
            return

        try:
            await asyncio.wait_for(self._unlisten(connection), timeout=_CLEANUP_TIMEOUT_S)
        except (psycopg.Error, TimeoutError):
            LOGGER.exception("unlisten_failed", extra={"channel": self._channel})

        try:
            await connection.close()
        except psycopg.Error:
            LOGGER.exception("database_close_failed")
        else:
            LOGGER.info("database_connection_closed")

    async def _unlisten(self, connection: psycopg.AsyncConnection[Any]) -> None:
        async with connection.cursor() as cursor:
            await cursor.execute(f"UNLISTEN {self._channel}")

    async def _discard_connection(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None or connection.closed:
            return
        try:
            await connection.close()
        except psycopg.Error:
            LOGGER.debug("stale_connection_close_failed", exc_info=True)
