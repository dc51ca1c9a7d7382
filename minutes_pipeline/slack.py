from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from minutes_pipeline.errors import ApiError
from minutes_pipeline.http_client import http_json, http_request

logger = logging.getLogger(__name__)


class ConversationNotifier(Protocol):
    def post_message(self, *, channel: str, text: str, thread_ts: str | None = None) -> bool: ...


class SlackClient:
    """Minimal Slack Web API client: chat.postMessage and private file download."""

    def __init__(
        self,
        *,
        bot_token: str,
        api_base_url: str = "https://slack.com/api",
        timeout_s: float = 30.0,
        download_timeout_s: float = 60.0,
    ) -> None:
        self._bot_token = bot_token
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._download_timeout_s = download_timeout_s

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._bot_token}"}

    def post_message(self, *, channel: str, text: str, thread_ts: str | None = None) -> bool:
        """Post into a channel/thread. Failures are logged and reported as ``False``."""
        if not self._bot_token:
            logger.warning("slack_post_skipped channel=%s reason=missing_bot_token", channel)
            return False
        payload: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        try:
            data = http_json(
                f"{self._api_base_url}/chat.postMessage",
                method="POST",
                payload=payload,
                headers=self._auth_headers(),
                timeout_s=self._timeout_s,
                upstream="slack",
            )
        except ApiError as exc:
            logger.warning("slack_post_failed channel=%s error=%s", channel, exc.message)
            return False
        if not data.get("ok", False):
            logger.warning("slack_post_rejected channel=%s error=%s", channel, data.get("error", "unknown"))
            return False
        return True

    def download_file(self, *, url: str, max_bytes: int | None = None) -> bytes:
        content = http_request(
            url,
            headers=self._auth_headers(),
            timeout_s=self._download_timeout_s,
            upstream="slack",
            max_bytes=max_bytes,
        )
        if content.lstrip()[:16].lower().startswith((b"<!doctype html", b"<html")):
            # Slack answers an unauthenticated private-file request with its login page.
            raise ApiError(
                code="SLACK_DOWNLOAD_UNAUTHORIZED",
                message="slack returned an HTML page instead of file content",
                error_class="external_api",
                retryable=False,
                http_status=502,
            )
        return content


class RecordingNotifier:
    """In-process notifier that keeps every message; used for local runs without a bot token."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    def post_message(self, *, channel: str, text: str, thread_ts: str | None = None) -> bool:
        self.messages.append({"channel": channel, "text": text, "thread_ts": thread_ts})
        logger.info("notification_recorded %s", json.dumps({"channel": channel, "thread_ts": thread_ts}))
        return True

    def reset(self) -> None:
        self.messages.clear()
