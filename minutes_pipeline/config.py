from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

MAX_FILE_SIZE_BYTES = 1024 * 1024 * 1024
IDEMPOTENCY_TTL_S = 24 * 60 * 60


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return str(env.get(name, default)).strip() or default


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class PipelineConfig:
    slack_signing_secret: str
    slack_bot_token: str
    slack_api_base_url: str
    slack_request_max_age_s: int
    max_file_size_bytes: int
    idempotency_ttl_s: int
    job_queue_name: str
    callback_queue_name: str
    callback_mode: str
    callback_url: str
    speech_language_code: str
    speech_timeout_s: float
    http_timeout_s: float
    file_download_timeout_s: float
    job_sla_minutes: int
    summarizer_provider: str
    gemini_api_key: str
    gemini_model: str
    notion_api_key: str
    notion_database_id: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        return cls(
            slack_signing_secret=env_str(env, "SLACK_SIGNING_SECRET"),
            slack_bot_token=env_str(env, "SLACK_BOT_TOKEN"),
            slack_api_base_url=env_str(env, "SLACK_API_BASE_URL", "https://slack.com/api").rstrip("/"),
            slack_request_max_age_s=env_int(env, "SLACK_REQUEST_MAX_AGE_S", default=600, minimum=1),
            max_file_size_bytes=env_int(env, "MAX_FILE_SIZE_BYTES", default=MAX_FILE_SIZE_BYTES, minimum=1),
            idempotency_ttl_s=env_int(env, "IDEMPOTENCY_TTL_S", default=IDEMPOTENCY_TTL_S, minimum=1),
            job_queue_name=env_str(env, "JOB_QUEUE_NAME", "transcription-jobs"),
            callback_queue_name=env_str(env, "CALLBACK_QUEUE_NAME", "job-callbacks"),
            callback_mode=env_str(env, "CALLBACK_MODE", "queue").lower(),
            callback_url=env_str(env, "CALLBACK_URL"),
            speech_language_code=env_str(env, "SPEECH_LANGUAGE_CODE", "ja-JP"),
            speech_timeout_s=env_float(env, "SPEECH_TIMEOUT_S", default=900.0, minimum=1.0),
            http_timeout_s=env_float(env, "HTTP_TIMEOUT_S", default=30.0, minimum=1.0),
            file_download_timeout_s=env_float(env, "FILE_DOWNLOAD_TIMEOUT_S", default=60.0, minimum=1.0),
            job_sla_minutes=env_int(env, "JOB_SLA_MINUTES", default=30, minimum=1),
            summarizer_provider=env_str(env, "SUMMARIZER_PROVIDER", "gemini").lower(),
            gemini_api_key=env_str(env, "GEMINI_API_KEY"),
            gemini_model=env_str(env, "GEMINI_MODEL", "gemini-1.5-flash"),
            notion_api_key=env_str(env, "NOTION_API_KEY"),
            notion_database_id=env_str(env, "NOTION_DATABASE_ID"),
        )
