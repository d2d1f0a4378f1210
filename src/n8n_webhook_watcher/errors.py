from __future__ import annotations


class WatcherError(Exception):
    """Base class for relay failures that end the process."""


class ChangeCaptureInstallError(WatcherError):
    """The notify function or trigger could not be installed."""


class WatcherStartupError(WatcherError):
    """Initial connect, trigger installation or LISTEN failed."""


class ReconnectExhaustedError(WatcherError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"Gave up reconnecting after {attempts} consecutive failed attempts")
        self.attempts = attempts
