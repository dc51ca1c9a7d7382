from __future__ import annotations

import hashlib
import hmac
import time

from minutes_pipeline.errors import ApiError

SIGNATURE_VERSION = "v0"


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "x-slack-signature",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("xoxb-", "secret_", "bearer ", "token")):
            return "***REDACTED***"
    return value


def compute_slack_signature(*, signing_secret: str, timestamp: str, body: bytes) -> str:
    basestring = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def verify_slack_request(
    *,
    signing_secret: str,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    max_age_s: int = 600,
    now: float | None = None,
) -> None:
    if not timestamp or not timestamp.strip().isdigit():
        raise _unauthorized("invalid request timestamp")
    current = int(time.time() if now is None else now)
    if abs(current - int(timestamp)) > max_age_s:
        raise _unauthorized("request timestamp outside the allowed window")
    if not signature:
        raise _unauthorized("missing request signature")
    if not signing_secret:
        raise _unauthorized("signing secret not configured")
    expected = compute_slack_signature(signing_secret=signing_secret, timestamp=timestamp.strip(), body=body)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
        raise _unauthorized("invalid request signature")
