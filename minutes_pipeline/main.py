from __future__ import annotations

import base64
import binascii
import json
import logging
import uuid
from typing import Any

from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from minutes_pipeline.errors import ApiError
from minutes_pipeline.job_records import sla_exceeded
from minutes_pipeline.runtime import PipelineRuntime, build_runtime
from minutes_pipeline.schemas import (
    CallbackPayload,
    RetryJobRequest,
    SlackEnvelope,
    error_envelope,
    success_envelope,
)
from minutes_pipeline.security import redact_sensitive, verify_slack_request

logger = logging.getLogger(__name__)


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def _invalid_payload(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _require_internal(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def _unwrap_push_body(payload: dict[str, Any]) -> dict[str, Any]:
    """Accept either a bare job message or a Pub/Sub push envelope carrying one."""
    message = payload.get("message")
    if not isinstance(message, dict) or "data" not in message:
        return payload
    try:
        decoded = json.loads(base64.b64decode(str(message["data"]), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _invalid_payload("push message data is not base64-encoded JSON") from exc
    if not isinstance(decoded, dict):
        raise _invalid_payload("push message data must be a JSON object")
    return decoded


def create_app(runtime: PipelineRuntime | None = None) -> FastAPI:
    app = FastAPI(title="Slack Minutes Pipeline", version="0.1.0")
    app.state.runtime = runtime or build_runtime()

    def _runtime() -> PipelineRuntime:
        return app.state.runtime

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = _trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.error_class == "security_sensitive":
            logger.warning(
                "request_rejected path=%s code=%s headers=%s",
                request.url.path,
                exc.code,
                redact_sensitive(dict(request.headers)),
            )
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.post("/api/slack/events")
    async def slack_events(
        request: Request,
        x_slack_request_timestamp: str | None = Header(default=None, alias="x-slack-request-timestamp"),
        x_slack_signature: str | None = Header(default=None, alias="x-slack-signature"),
    ):
        body = await request.body()
        try:
            raw = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise _invalid_payload("request body is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise _invalid_payload("request body must be a JSON object")
        if raw.get("type") == "url_verification":
            return JSONResponse({"challenge": raw.get("challenge")})

        rt = _runtime()
        verify_slack_request(
            signing_secret=rt.config.slack_signing_secret,
            timestamp=x_slack_request_timestamp,
            signature=x_slack_signature,
            body=body,
            max_age_s=rt.config.slack_request_max_age_s,
        )
        try:
            envelope = SlackEnvelope.model_validate(raw)
        except ValidationError as exc:
            raise _invalid_payload("malformed event envelope") from exc

        try:
            result = rt.dispatcher.handle_envelope(envelope)
        except Exception:
            # A non-2xx answer makes Slack redeliver; the duplicate gate has already run.
            logger.exception("dispatch_crashed event_id=%s", envelope.event_id)
            return JSONResponse({"ok": True, "status": "dispatch_error"})

        headers: dict[str, str] = {}
        if result.event_hash:
            headers["x-processed-event-hash"] = result.event_hash
        if result.duplicate:
            headers["x-duplicate-detected"] = "true"
        return JSONResponse(result.to_response(), headers=headers)

    @app.post("/api/v1/worker/push")
    def worker_push(request: Request, payload: dict[str, Any] = Body(...)):
        message = _unwrap_push_body(payload)
        outcome = _runtime().worker.process(message)
        if outcome is None:
            raise _invalid_payload("job message requires jobId")
        data = {
            "jobId": outcome.job_id,
            "status": outcome.status,
            "transcriptUrl": outcome.transcript_url,
            "error": outcome.error,
        }
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/callbacks")
    def job_callback(request: Request, payload: CallbackPayload):
        if payload.status == "success" and not payload.transcript_url:
            raise _invalid_payload("transcriptUrl is required for a success callback")
        result = _runtime().reconciler.reconcile(payload)
        return success_envelope(result.as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/jobs/{job_id}/retry")
    def retry_job(job_id: str, request: Request, payload: RetryJobRequest):
        result = _runtime().dispatcher.redispatch(job_id, payload)
        data = {"retry_of": job_id, **result.to_response()}
        status_code = 202 if result.job_id else 200
        return JSONResponse(status_code=status_code, content=success_envelope(data, _trace_id_from_request(request)))

    @app.get("/api/v1/jobs/{job_id}")
    def get_job(job_id: str, request: Request):
        rt = _runtime()
        record = rt.tracker.get(job_id)
        if record is None:
            raise ApiError(
                code="JOB_NOT_FOUND",
                message="job not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        data = {**record, "sla_exceeded": sla_exceeded(record, sla_minutes=rt.config.job_sla_minutes)}
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/internal/worker/drain-once")
    def internal_worker_drain_once(
        request: Request,
        x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
    ):
        _require_internal(x_internal_debug)
        stats = _runtime().worker_runtime.run_once()
        return success_envelope(stats, _trace_id_from_request(request))

    @app.post("/api/v1/internal/idempotency/clear")
    def internal_idempotency_clear(
        request: Request,
        x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
    ):
        _require_internal(x_internal_debug)
        _runtime().idempotency.clear()
        logger.warning("idempotency_store_cleared trace_id=%s", _trace_id_from_request(request))
        return success_envelope({"cleared": True}, _trace_id_from_request(request))

    return app
