"""Summarisation of a transcript into the seven-section minutes structure.

Gemini is called over its REST ``generateContent`` endpoint. Whatever the
model answers is reduced to the fixed section set; an answer that cannot be
read as JSON yields the default structure instead of an error.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol
from urllib.parse import quote

from jsonschema import ValidationError, validate

from minutes_pipeline.errors import ApiError
from minutes_pipeline.http_client import http_json

logger = logging.getLogger(__name__)

SUMMARY_SECTIONS = ("meetingName", "basicInfo", "purpose", "content", "schedule", "resources", "notes")

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {name: {"type": "string"} for name in SUMMARY_SECTIONS},
    "required": list(SUMMARY_SECTIONS),
}

DEFAULT_MEETING_NAME = "Meeting minutes"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class Summarizer(Protocol):
    def summarize(self, *, transcript: str, metadata: dict[str, Any] | None = None) -> dict[str, str]: ...


def default_summary(reason: str) -> dict[str, str]:
    summary = {name: "" for name in SUMMARY_SECTIONS}
    summary["meetingName"] = DEFAULT_MEETING_NAME
    summary["basicInfo"] = "No information"
    summary["notes"] = reason
    return summary


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(f"- {_as_text(item)}" for item in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_summary_response(text: str) -> dict[str, str]:
    match = re.search(r"\{[\s\S]*\}", text or "")
    if match is None:
        logger.warning("summary_parse_failed reason=no_json_object")
        return default_summary("The summary response could not be parsed.")
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.warning("summary_parse_failed reason=invalid_json")
        return default_summary("The summary response could not be parsed.")
    if not isinstance(raw, dict):
        return default_summary("The summary response could not be parsed.")
    summary = {name: _as_text(raw.get(name)) for name in SUMMARY_SECTIONS}
    if not summary["meetingName"]:
        summary["meetingName"] = DEFAULT_MEETING_NAME
    validate_summary(summary)
    return summary


def validate_summary(summary: dict[str, Any]) -> None:
    try:
        validate(instance=summary, schema=SUMMARY_SCHEMA)
    except ValidationError as exc:
        raise ApiError(
            code="SUMMARY_SCHEMA_INVALID",
            message=f"summary does not match the minutes structure: {exc.message}",
            error_class="external_api",
            retryable=False,
            http_status=502,
        ) from exc


def build_prompt(transcript: str, metadata: dict[str, Any] | None = None) -> str:
    meta = metadata or {}
    context_lines = [f"{label}: {meta[key]}" for key, label in (("date", "Date"), ("channel", "Channel")) if meta.get(key)]
    sections = ",\n".join(f'  "{name}": "..."' for name in SUMMARY_SECTIONS)
    return (
        "Summarise the following meeting transcript as minutes.\n\n"
        + ("\n".join(context_lines) + "\n\n" if context_lines else "")
        + "# Transcript\n"
        + transcript
        + "\n\n# Output format (JSON only)\n{\n"
        + sections
        + "\n}\n\n"
        "# Instructions\n"
        "- meetingName: title or main topic; basicInfo: date, place, participants\n"
        "- purpose: goal and agenda; content: main discussion and decisions\n"
        "- schedule: next steps and owners; resources: shared material; notes: anything else\n"
        "- Use only information present in the transcript and keep the whole summary concise\n"
        "- Answer with the JSON object only"
    )


class GeminiSummarizer:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-1.5-flash",
        timeout_s: float = 30.0,
        api_base: str = GEMINI_API_BASE,
    ) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY must be set for SUMMARIZER_PROVIDER=gemini")
        self._api_key = api_key
        self._model = model
        self._timeout_s = timeout_s
        self._api_base = api_base.rstrip("/")

    def summarize(self, *, transcript: str, metadata: dict[str, Any] | None = None) -> dict[str, str]:
        if not transcript.strip():
            return default_summary("The transcript was empty.")
        response = http_json(
            f"{self._api_base}/models/{quote(self._model)}:generateContent?key={quote(self._api_key)}",
            method="POST",
            payload={
                "contents": [{"parts": [{"text": build_prompt(transcript, metadata)}]}],
                "generationConfig": {
                    "temperature": 0.2,
                    "topK": 40,
                    "topP": 0.95,
                    "maxOutputTokens": 8192,
                },
            },
            timeout_s=self._timeout_s,
            upstream="gemini",
        )
        try:
            text = response["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            logger.warning("summary_parse_failed reason=no_candidate_text model=%s", self._model)
            return default_summary("The summary response contained no text.")
        return parse_summary_response(str(text))


class MockSummarizer:
    """Deterministic summariser for local runs and tests."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def summarize(self, *, transcript: str, metadata: dict[str, Any] | None = None) -> dict[str, str]:
        self.calls.append({"transcript": transcript, "metadata": dict(metadata or {})})
        first_line = transcript.strip().split(".")[0][:80]
        summary = {
            "meetingName": first_line or DEFAULT_MEETING_NAME,
            "basicInfo": f"channel {(metadata or {}).get('channel', 'unknown')}",
            "purpose": "",
            "content": transcript[:1000],
            "schedule": "",
            "resources": "",
            "notes": "generated by the mock summariser",
        }
        validate_summary(summary)
        return summary


def create_summarizer(*, provider: str, api_key: str, model: str, timeout_s: float) -> GeminiSummarizer | MockSummarizer:
    if provider == "mock":
        return MockSummarizer()
    if provider == "gemini":
        return GeminiSummarizer(api_key=api_key, model=model, timeout_s=timeout_s)
    raise RuntimeError(f"unsupported summarizer provider: {provider}")
