from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import psycopg

from n8n_webhook_watcher.connection import ConnectionManager
from n8n_webhook_watcher.errors import ChangeCaptureInstallError, ReconnectExhaustedError
from n8n_webhook_watcher.models import ConnectionState

LOGGER = logging.getLogger(__name__)

_RECONNECT_ERRORS = (psycopg.Error, OSError, ChangeCaptureInstallError)


class ReconnectPolicy:
    """Fixed-delay retry bounded by consecutive failures.

    ``attempts`` counts failed reconnects since the last successful one. Once it
    reaches ``max_attempts`` the next call gives up without sleeping again.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        delay_s: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if delay_s < 0:
            raise ValueError("delay_s must be >= 0")

        self._max_attempts = max_attempts
        self._delay_s = delay_s
        self._sleep = sleep
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def reset(self) -> None:
        self._attempts = 0

    async def reconnect(self, connection: ConnectionManager) -> None:
        if connection.state is ConnectionState.LISTENING:
            return

        connection.begin_reconnect()
        while True:
            if self._attempts >= self._max_attempts:
                connection.mark_failed()
                LOGGER.critical(
                    "reconnect_attempts_exhausted",
                    extra={"attempts": self._attempts, "max_attempts": self._max_attempts},
                )
                raise ReconnectExhaustedError(self._attempts)

            self._attempts += 1
            LOGGER.warning(
                "reconnect_attempt",
                extra={"attempt": self._attempts, "max_attempts": self._max_attempts},
            )
            await self._sleep(self._delay_s)

            try:
                await connection.connect()
                await connection.start_listening()
            except _RECONNECT_ERRORS as exc:
                LOGGER.error(
                    "reconnect_failed",
                    extra={"attempt": self._attempts, "error": str(exc)},
                )
                connection.begin_reconnect()
                continue

            LOGGER.info("reconnected", extra={"attempts": self._attempts})
            self.reset()
            return
