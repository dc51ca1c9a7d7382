from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SlackFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    mimetype: str = ""
    filetype: str = ""
    size: int = Field(default=0, ge=0)
    url_private: str | None = None


class SlackEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    channel: str | None = None
    ts: str | None = None
    user: str | None = None
    text: str | None = None
    thread_ts: str | None = None
    bot_id: str | None = None
    files: list[SlackFile] = Field(default_factory=list)


class SlackEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    challenge: str | None = None
    event_id: str | None = None
    event_time: int | None = None
    team_id: str | None = None
    event: SlackEvent | None = None


class EventContext(BaseModel):
    """Minimal slice of the triggering event carried through the queue."""

    model_config = ConfigDict(extra="allow")

    channel: str
    ts: str
    text: str = ""
    thread_ts: str | None = None
    user: str | None = None

    @property
    def reply_ts(self) -> str:
        return self.thread_ts or self.ts


class JobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    gcs_paths: list[str] = Field(default_factory=list, alias="gcsPaths")
    file_names: list[str] = Field(default_factory=list, alias="fileNames")
    slack_event: EventContext | None = Field(default=None, alias="slackEvent")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CallbackPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    job_id: str = Field(alias="jobId", min_length=1)
    status: Literal["success", "failure"]
    transcript_url: str | None = Field(default=None, alias="transcriptUrl")
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RetryJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    channel: str = Field(min_length=1)
    ts: str = Field(min_length=1)
    user: str = Field(min_length=1)
    text: str = ""
    thread_ts: str | None = None
    file_ids: list[str] = Field(default_factory=list, alias="fileIds")
    gcs_paths: list[str] = Field(default_factory=list, alias="gcsPaths")
    file_names: list[str] = Field(default_factory=list, alias="fileNames")
    metadata: dict[str, Any] = Field(default_factory=dict)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
