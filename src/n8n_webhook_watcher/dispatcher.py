from __future__ import annotations

import json
import logging
from collections.abc import Mapping

import httpx
from pydantic import ValidationError

from n8n_webhook_watcher.models import WebhookPayload, parse_change_event

LOGGER = logging.getLogger(__name__)

USER_AGENT = "n8n-webhook-watcher/1.0.0"
_MAX_LOGGED_BODY_CHARS = 2000


class WebhookDispatcher:
    """Turns channel notifications into webhook POSTs.

    Delivery is attempted once. Neither malformed payloads nor failed deliveries are
    raised to the caller, so they never affect the listening connection.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        url: str,
        timeout_s: float,
        headers: Mapping[str, str] | None = None,
        debug: bool = False,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

        self._client = client
        self._url = url
        self._timeout = httpx.Timeout(timeout_s)
        self._extra_headers = dict(headers or {})
        self._debug = debug

    @property
    def url(self) -> str:
        return self._url

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        headers.update(self._extra_headers)
        return headers

    async def handle_notification(self, payload: str) -> httpx.Response | None:
        try:
            event = parse_change_event(payload)
        except ValidationError as exc:
            LOGGER.warning(
                "notification_payload_invalid",
                extra={"payload": payload[:_MAX_LOGGED_BODY_CHARS], "error": str(exc)},
            )
            return None

        LOGGER.info(
            "workflow_change",
            extra={
                "action": event.action.value,
                "workflow_id": event.workflow_id,
                "workflow_name": event.workflow_name,
            },
        )
        return await self.send(WebhookPayload.from_change_event(event))

    async def send(self, webhook_payload: WebhookPayload) -> httpx.Response | None:
        body = webhook_payload.to_json_dict()
        if self._debug:
            LOGGER.info("webhook_payload %s", json.dumps(body, indent=2))

        try:
            response = await self._client.post(
                self._url,
                json=body,
                headers=self.build_headers(),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            LOGGER.error(
                "webhook_send_failed",
                extra={
                    "url": self._url,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return None
        except Exception as exc:
            # Delivery failures never propagate to the listener.
            LOGGER.exception(
                "webhook_send_failed",
                extra={
                    "url": self._url,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return None

        if response.is_success:
            LOGGER.info("webhook_sent", extra={"status_code": response.status_code})
        else:
            LOGGER.error(
                "webhook_rejected",
                extra={
                    "status_code": response.status_code,
                    "response_body": response.text[:_MAX_LOGGED_BODY_CHARS],
                },
            )

        return response
