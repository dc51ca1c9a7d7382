from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import FakeFileSource, message_envelope

from minutes_pipeline.config import PipelineConfig
from minutes_pipeline.dispatcher import (
    STATUS_ALL_FILES_FAILED,
    STATUS_CREATED,
    STATUS_PUBLISH_FAILED,
    JobDispatcher,
    staged_file_name,
)
from minutes_pipeline.errors import ApiError
from minutes_pipeline.idempotency import InMemoryIdempotencyStore, event_fingerprint
from minutes_pipeline.job_records import InMemoryJobRecordStore, JobTracker
from minutes_pipeline.queue_backend import InMemoryQueueBackend
from minutes_pipeline.schemas import RetryJobRequest, SlackEnvelope, SlackFile
from minutes_pipeline.slack import RecordingNotifier


class BrokenQueue:
    def enqueue(self, *, queue_name, payload, available_at=None):
        raise ConnectionError("queue unavailable")


def _dispatcher(storage, *, queue=None, max_file_size_bytes: int | None = None) -> JobDispatcher:
    env = {}
    if max_file_size_bytes is not None:
        env["MAX_FILE_SIZE_BYTES"] = str(max_file_size_bytes)
    source = FakeFileSource()
    source.files["https://files.slack.test/F001/meeting.mp4"] = b"video-bytes"
    ids = iter(["job_0001", "job_0002", "job_0003"])
    return JobDispatcher(
        config=PipelineConfig.from_env(env),
        idempotency=InMemoryIdempotencyStore(),
        tracker=JobTracker(InMemoryJobRecordStore()),
        queue=queue or InMemoryQueueBackend(),
        storage=storage,
        notifier=RecordingNotifier(),
        file_source=source,
        job_id_factory=lambda: next(ids),
        clock=lambda: datetime(2024, 5, 1, 9, 30, tzinfo=UTC),
    )


def test_event_fingerprint_is_stable_sha256():
    first = event_fingerprint(event_id="Ev1", channel="C1", ts="100.1")
    assert first == event_fingerprint(event_id="Ev1", channel="C1", ts="100.1")
    assert first != event_fingerprint(event_id="Ev1", channel="C1", ts="100.2")
    assert len(first) == 64


def test_dispatch_stages_files_under_job_namespace(storage):
    dispatcher = _dispatcher(storage)
    result = dispatcher.handle_envelope(SlackEnvelope.model_validate(message_envelope()))

    assert result.status == STATUS_CREATED
    assert result.job_id == "job_0001"
    assert result.gcs_paths == ["object://local/minutes/meetings/20240501_0930/job_0001/meeting.mp4"]

    msg = dispatcher.queue.dequeue(queue_name="transcription-jobs")
    assert msg.payload["jobId"] == "job_0001"
    assert msg.payload["gcsPaths"] == result.gcs_paths
    assert msg.payload["fileNames"] == ["meeting.mp4"]
    assert msg.payload["slackEvent"]["channel"] == "C001"

    record = dispatcher.tracker.get("job_0001")
    assert record["file_ids"] == ["F001"]
    assert record["slack_event"]["text"] == "weekly sync"


def test_non_event_callback_envelopes_are_ignored(storage):
    dispatcher = _dispatcher(storage)
    result = dispatcher.handle_envelope(SlackEnvelope.model_validate({"type": "app_rate_limited"}))
    assert result.status == "ignored"
    assert result.event_hash is None


def test_publish_failure_marks_job_failed_and_notifies(storage):
    dispatcher = _dispatcher(storage, queue=BrokenQueue())
    result = dispatcher.handle_envelope(SlackEnvelope.model_validate(message_envelope()))

    assert result.status == STATUS_PUBLISH_FAILED
    record = dispatcher.tracker.get("job_0001")
    assert record["status"] == "failed"
    assert "queue unavailable" in record["error_details"]
    assert dispatcher.notifier.messages[-1]["text"].startswith("Failed to queue processing job (ID: job_0001)")


def test_download_exceeding_limit_counts_as_too_large(storage):
    dispatcher = _dispatcher(storage, max_file_size_bytes=4)

    class SizeCheckingSource(FakeFileSource):
        def download_file(self, *, url, max_bytes=None):
            raise ApiError(
                code="FILE_TOO_LARGE",
                message=f"downloaded file exceeds {max_bytes} bytes",
                error_class="validation",
                retryable=False,
                http_status=413,
            )

    dispatcher.file_source = SizeCheckingSource()
    files = [{"id": "F001", "name": "meeting.mp4", "size": 0, "url_private": "https://files.slack.test/F001/meeting.mp4"}]
    result = dispatcher.handle_envelope(SlackEnvelope.model_validate(message_envelope(files=files)))

    assert result.status == STATUS_ALL_FILES_FAILED
    assert result.failures[0].too_large is True
    assert dispatcher.notifier.messages[0]["text"].startswith("The file is too large to process.")
    assert dispatcher.tracker.get("job_0001") is None


def test_file_without_download_url_is_reported(storage):
    dispatcher = _dispatcher(storage)
    files = [{"id": "F009", "name": "clip.webm", "size": 10}]
    result = dispatcher.handle_envelope(SlackEnvelope.model_validate(message_envelope(files=files)))

    assert result.status == STATUS_ALL_FILES_FAILED
    assert result.failures[0].reason == "file has no private download URL"
    assert "Failed to process the files." in dispatcher.notifier.messages[0]["text"]


def test_redispatch_uses_explicit_paths(storage):
    dispatcher = _dispatcher(storage)
    source = storage.put_object(key="uploads/manual/recording.m4a", content_bytes=b"audio")

    result = dispatcher.redispatch(
        "job_old",
        RetryJobRequest(channel="C9", ts="5.5", user="U9", gcsPaths=[source], fileNames=["recording.m4a"]),
    )

    assert result.status == STATUS_CREATED
    assert result.gcs_paths == ["object://local/minutes/meetings/20240501_0930/job_0001/recording.m4a"]
    record = dispatcher.tracker.get("job_0001")
    assert record["retry_of"] == "job_old"
    assert record["slack_event"] == {"channel": "C9", "ts": "5.5", "text": "", "user": "U9"}


def test_redispatch_without_artifacts_raises(storage):
    dispatcher = _dispatcher(storage)
    with pytest.raises(ApiError) as exc:
        dispatcher.redispatch("job_none", RetryJobRequest(channel="C1", ts="1.0", user="U1"))
    assert exc.value.code == "RETRY_NO_ARTIFACTS"


def test_staged_file_name_adds_media_extension_when_missing():
    assert staged_file_name(SlackFile(id="F1", name="meeting.mp4", mimetype="video/mp4")) == "meeting.mp4"
    assert staged_file_name(SlackFile(id="F1", mimetype="video/mp4")) == "F1.mp4"
    assert staged_file_name(SlackFile(id="F2", name="recording", filetype="m4a")) == "recording.m4a"
    assert staged_file_name(SlackFile(id="F3", mimetype="video/quicktime")) == "F3.mov"
    assert staged_file_name(SlackFile(id="F4", name="notes", mimetype="text/plain")) == "notes"
