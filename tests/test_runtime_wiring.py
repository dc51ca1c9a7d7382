from __future__ import annotations

import pytest
from conftest import FakeRecognizer, FakeTranscoder

from minutes_pipeline.callbacks import HttpCallbackSink, InlineCallbackSink, QueueCallbackSink
from minutes_pipeline.idempotency import FallbackIdempotencyStore, InMemoryIdempotencyStore
from minutes_pipeline.knowledge_base import InMemoryKnowledgeBase
from minutes_pipeline.queue_backend import InMemoryQueueBackend
from minutes_pipeline.runtime import build_runtime
from minutes_pipeline.schemas import CallbackPayload
from minutes_pipeline.slack import RecordingNotifier, SlackClient
from minutes_pipeline.summarizer import MockSummarizer


def _build(env: dict, storage, **overrides):
    kwargs = {"storage": storage, "transcoder": FakeTranscoder(), "recognizer": FakeRecognizer()}
    kwargs.update(overrides)
    return build_runtime(env, **kwargs)


def test_defaults_degrade_to_local_collaborators(storage):
    rt = _build({"SUMMARIZER_PROVIDER": "gemini"}, storage)

    assert isinstance(rt.idempotency, InMemoryIdempotencyStore)
    assert isinstance(rt.queue, InMemoryQueueBackend)
    assert isinstance(rt.notifier, RecordingNotifier)
    assert isinstance(rt.summarizer, MockSummarizer)
    assert isinstance(rt.knowledge_base, InMemoryKnowledgeBase)
    assert isinstance(rt.callback_sink, QueueCallbackSink)
    assert rt.worker_runtime.callback_queue_name == "job-callbacks"


def test_unsupported_queue_backend_falls_back_unless_true_stack_required(storage):
    rt = _build({"QUEUE_BACKEND": "rabbitmq"}, storage)
    assert isinstance(rt.queue, InMemoryQueueBackend)

    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        _build({"QUEUE_BACKEND": "rabbitmq", "REQUIRE_TRUESTACK": "true"}, storage)


def test_true_stack_requires_real_notifier(storage):
    with pytest.raises(RuntimeError, match="SLACK_BOT_TOKEN"):
        _build({"REQUIRE_TRUESTACK": "true"}, storage)


def test_bot_token_selects_slack_client_and_durable_idempotency(storage, tmp_path):
    rt = _build(
        {
            "SLACK_BOT_TOKEN": "xoxb-test",
            "IDEMPOTENCY_BACKEND": "sqlite",
            "IDEMPOTENCY_SQLITE_PATH": str(tmp_path / "idem.sqlite3"),
        },
        storage,
    )
    assert isinstance(rt.notifier, SlackClient)
    assert rt.file_source is rt.notifier
    assert isinstance(rt.idempotency, FallbackIdempotencyStore)


def test_callback_modes(storage):
    inline = _build({"CALLBACK_MODE": "inline"}, storage)
    assert isinstance(inline.callback_sink, InlineCallbackSink)

    http = _build({"CALLBACK_MODE": "http", "CALLBACK_URL": "https://minutes.test/api/v1/callbacks"}, storage)
    assert isinstance(http.callback_sink, HttpCallbackSink)

    with pytest.raises(RuntimeError, match="unsupported callback mode"):
        _build({"CALLBACK_MODE": "smtp"}, storage)


def test_inline_mode_completes_without_queue_hop(storage):
    notifier = RecordingNotifier()
    rt = _build({"CALLBACK_MODE": "inline"}, storage, notifier=notifier)
    uri = storage.put_object(key="meetings/20240501_0930/job_i1/a.wav", content_bytes=b"wav")
    rt.tracker.create("job_i1", fields={"gcs_paths": [uri], "slack_event": {"channel": "C1", "ts": "1.0"}})

    outcome = rt.worker.process({"jobId": "job_i1", "gcsPaths": [uri], "fileNames": ["a.wav"]})

    assert outcome.status == "success"
    assert rt.tracker.get("job_i1")["status"] == "completed"
    assert rt.queue.pending_count(queue_name="job-callbacks") == 0
    assert notifier.messages[-1]["text"].startswith("Minutes from the audio/video are ready!")


def test_handle_callback_validates_payload(storage):
    rt = _build({}, storage)
    with pytest.raises(ValueError):
        rt.handle_callback({"status": "success"})
    result = rt.handle_callback({"jobId": "job_none", "status": "failure", "error": "boom"})
    assert result.status == "error_logged"
    assert CallbackPayload(jobId="j", status="failure").to_wire() == {"jobId": "j", "status": "failure", "metadata": {}}
