from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from minutes_pipeline.http_client import http_request
from minutes_pipeline.schemas import CallbackPayload

logger = logging.getLogger(__name__)


class CallbackSink(Protocol):
    def send(self, payload: CallbackPayload) -> None: ...


class QueueCallbackSink:
    """Publishes the outcome on the callback queue; delivery retries happen there."""

    mode = "queue"

    def __init__(self, *, queue: Any, queue_name: str) -> None:
        self.queue = queue
        self.queue_name = queue_name

    def send(self, payload: CallbackPayload) -> None:
        msg = self.queue.enqueue(queue_name=self.queue_name, payload=payload.to_wire())
        logger.info("callback_enqueued job_id=%s status=%s message_id=%s", payload.job_id, payload.status, msg.message_id)


class HttpCallbackSink:
    """POSTs the outcome to a callback endpoint, typically ``/api/v1/callbacks`` of another replica."""

    mode = "http"

    def __init__(self, *, url: str, timeout_s: float = 30.0) -> None:
        if not url:
            raise ValueError("CALLBACK_URL must be set when CALLBACK_MODE=http")
        self.url = url
        self.timeout_s = timeout_s

    def send(self, payload: CallbackPayload) -> None:
        http_request(
            self.url,
            method="POST",
            payload=payload.to_wire(),
            timeout_s=self.timeout_s,
            upstream="callback",
        )
        logger.info("callback_posted job_id=%s status=%s", payload.job_id, payload.status)


class InlineCallbackSink:
    """Hands the outcome straight to the reconciler in the same process."""

    mode = "inline"

    def __init__(self, handler: Callable[[CallbackPayload], Any]) -> None:
        self.handler = handler

    def send(self, payload: CallbackPayload) -> None:
        self.handler(payload)
