from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import psycopg
import pytest

from n8n_webhook_watcher.connection import ConnectionManager
from n8n_webhook_watcher.dispatcher import WebhookDispatcher
from n8n_webhook_watcher.errors import ReconnectExhaustedError, WatcherStartupError
from n8n_webhook_watcher.models import ConnectionState
from n8n_webhook_watcher.reconnect import ReconnectPolicy
from n8n_webhook_watcher.watcher import WebhookWatcher
from tests.stubs import StubConnection, StubConnector, notify


def _notification(workflow_id: str, action: str = "INSERT") -> str:
    return json.dumps(
        {
            "action": action,
            "workflow_id": workflow_id,
            "workflow_name": f"Workflow {workflow_id}",
            "active": True,
            "updated_at": "2024-05-01T10:00:00+00:00",
            "timestamp": "2024-05-01T10:00:01+00:00",
        }
    )


class _Webhook:
    def __init__(self, statuses: list[int] | None = None) -> None:
        self._statuses = list(statuses or [])
        self.bodies: list[dict[str, object]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        status = self._statuses.pop(0) if self._statuses else 200
        return httpx.Response(status)


def _watcher(
    client: httpx.AsyncClient,
    *,
    max_attempts: int = 3,
) -> WebhookWatcher:
    return WebhookWatcher(
        connection=ConnectionManager(conninfo="host=db"),
        dispatcher=WebhookDispatcher(
            client=client,
            url="https://hooks.example.com/n8n",
            timeout_s=1.0,
        ),
        reconnect_policy=ReconnectPolicy(max_attempts=max_attempts, delay_s=0.0),
    )


async def _run_until(
    watcher: WebhookWatcher,
    condition: Callable[[], bool],
    *,
    timeout_s: float = 2.0,
) -> None:
    task = asyncio.create_task(watcher.run())
    try:
        async with asyncio.timeout(timeout_s):
            while not condition():
                if task.done():
                    task.result()
                    raise AssertionError("watcher stopped before condition was met")
                await asyncio.sleep(0.01)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def test_resumes_after_connection_drop(monkeypatch: pytest.MonkeyPatch) -> None:
    first = StubConnection(
        [
            notify(_notification("wf-1")),
            psycopg.OperationalError("server closed the connection unexpectedly"),
        ]
    )
    second = StubConnection([notify(_notification("wf-2", "UPDATE"))], hold_open=True)
    connector = StubConnector(
        [first, psycopg.OperationalError("connection refused"), second]
    ).install(monkeypatch)
    webhook = _Webhook()

    async def scenario() -> WebhookWatcher:
        async with httpx.AsyncClient(transport=httpx.MockTransport(webhook)) as client:
            watcher = _watcher(client, max_attempts=3)
            await _run_until(watcher, lambda: len(webhook.bodies) == 2)
            return watcher

    watcher = asyncio.run(scenario())

    assert [body["workflow"]["id"] for body in webhook.bodies] == ["wf-1", "wf-2"]  # type: ignore[index]
    assert webhook.bodies[1]["action"] == "update"
    assert len(connector.calls) == 3
    assert watcher._reconnect_policy.attempts == 0
    assert second.executed[-1] == "UNLISTEN workflow_changed"
    assert second.closed is True
    assert watcher.connection.state is ConnectionState.DISCONNECTED


def test_failed_delivery_keeps_listener_subscribed(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = StubConnection(
        [notify(_notification("wf-1")), notify(_notification("wf-2"))],
        hold_open=True,
    )
    connector = StubConnector([connection]).install(monkeypatch)
    webhook = _Webhook(statuses=[500, 200])

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(webhook)) as client:
            await _run_until(_watcher(client), lambda: len(webhook.bodies) == 2)

    asyncio.run(scenario())

    assert len(connector.calls) == 1
    assert [body["workflow"]["id"] for body in webhook.bodies] == ["wf-1", "wf-2"]  # type: ignore[index]


def test_malformed_notification_does_not_stop_listener(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = StubConnection(
        [notify("definitely not json"), notify(_notification("wf-3", "DELETE"))],
        hold_open=True,
    )
    StubConnector([connection]).install(monkeypatch)
    webhook = _Webhook()

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(webhook)) as client:
            await _run_until(_watcher(client), lambda: len(webhook.bodies) == 1)

    asyncio.run(scenario())

    assert webhook.bodies[0]["action"] == "delete"


def test_initial_connection_failure_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    connector = StubConnector([psycopg.OperationalError("connection refused")]).install(monkeypatch)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_Webhook())) as client:
            await _watcher(client).run()

    with pytest.raises(WatcherStartupError, match="connection refused"):
        asyncio.run(scenario())

    assert len(connector.calls) == 1


def test_trigger_install_failure_is_fatal_at_startup(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = StubConnection(
        execute_errors={"CREATE TRIGGER": psycopg.errors.InsufficientPrivilege("must be owner")}
    )
    connector = StubConnector([connection]).install(monkeypatch)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_Webhook())) as client:
            await _watcher(client).run()

    with pytest.raises(WatcherStartupError, match="must be owner"):
        asyncio.run(scenario())

    assert len(connector.calls) == 1
    assert connection.closed is True


def test_exhausted_reconnects_stop_the_watcher(monkeypatch: pytest.MonkeyPatch) -> None:
    first = StubConnection([psycopg.OperationalError("terminating connection")])
    connector = StubConnector(
        [first, *(psycopg.OperationalError("connection refused") for _ in range(3))]
    ).install(monkeypatch)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_Webhook())) as client:
            await _watcher(client, max_attempts=3).run()

    with pytest.raises(ReconnectExhaustedError):
        asyncio.run(scenario())

    assert len(connector.calls) == 4


def test_clean_connection_end_triggers_reconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    first = StubConnection()
    second = StubConnection([notify(_notification("wf-4"))], hold_open=True)
    connector = StubConnector([first, second]).install(monkeypatch)
    webhook = _Webhook()

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(webhook)) as client:
            await _run_until(_watcher(client), lambda: len(webhook.bodies) == 1)

    asyncio.run(scenario())

    assert len(connector.calls) == 2
    assert first.closed is True
