from __future__ import annotations

import json
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from minutes_pipeline.errors import ApiError


def _upstream_error(*, upstream: str, message: str, status: int = 502) -> ApiError:
    return ApiError(
        code=f"{upstream.upper()}_UPSTREAM_ERROR",
        message=message,
        error_class="external_api",
        retryable=True,
        http_status=status,
    )


_CHUNK_BYTES = 1024 * 1024


def _too_large(max_bytes: int) -> ApiError:
    return ApiError(
        code="FILE_TOO_LARGE",
        message=f"downloaded file exceeds {max_bytes} bytes",
        error_class="validation",
        retryable=False,
        http_status=413,
    )


def _read_limited(resp: Any, *, max_bytes: int) -> bytes:
    declared = resp.headers.get("Content-Length") if getattr(resp, "headers", None) is not None else None
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise _too_large(max_bytes)
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = resp.read(_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise _too_large(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


def http_request(
    url: str,
    *,
    method: str = "GET",
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_s: float,
    upstream: str,
    max_bytes: int | None = None,
) -> bytes:
    """Blocking HTTP call; any transport or status failure surfaces as ``ApiError``.

    With ``max_bytes`` the body is streamed and the download stops as soon as
    the limit is crossed.
    """
    body = None
    all_headers = dict(headers or {})
    if payload is not None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        all_headers.setdefault("Content-Type", "application/json; charset=utf-8")
    req = request.Request(url, data=body, method=method, headers=all_headers)
    try:
        with request.urlopen(req, timeout=timeout_s) as resp:
            if max_bytes is None:
                return resp.read()
            return _read_limited(resp, max_bytes=max_bytes)
    except HTTPError as e:
        raw = e.read().decode("utf-8", errors="replace")
        raise _upstream_error(upstream=upstream, message=f"{upstream} HTTP {e.code}: {raw[:200]}") from e
    except (URLError, TimeoutError, OSError) as e:
        raise _upstream_error(upstream=upstream, message=f"{upstream} unavailable: {e}", status=503) from e


def http_json(
    url: str,
    *,
    method: str = "GET",
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_s: float,
    upstream: str,
) -> dict[str, Any]:
    raw = http_request(
        url,
        method=method,
        payload=payload,
        headers=headers,
        timeout_s=timeout_s,
        upstream=upstream,
    )
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise _upstream_error(upstream=upstream, message=f"{upstream} returned invalid JSON") from e
    if not isinstance(data, dict):
        raise _upstream_error(upstream=upstream, message=f"{upstream} returned a non-object JSON body")
    return data
