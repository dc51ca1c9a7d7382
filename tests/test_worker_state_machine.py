from __future__ import annotations

import json

from conftest import FakeRecognizer, FakeTranscoder

from minutes_pipeline.job_records import InMemoryJobRecordStore, JobTracker
from minutes_pipeline.slack import RecordingNotifier
from minutes_pipeline.worker import WorkerStateMachine


class CollectingSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.payloads = []
        self.fail = fail

    def send(self, payload) -> None:
        if self.fail:
            raise ConnectionError("callback endpoint unreachable")
        self.payloads.append(payload)


def _worker(storage, *, sink=None, recognizer=None):
    tracker = JobTracker(InMemoryJobRecordStore())
    return WorkerStateMachine(
        tracker=tracker,
        storage=storage,
        transcoder=FakeTranscoder(),
        recognizer=recognizer or FakeRecognizer(),
        callback_sink=sink or CollectingSink(),
        notifier=RecordingNotifier(),
    )


def _seed(worker, storage, *, job_id: str = "job_w1", filename: str = "meeting.mp4") -> dict:
    uri = storage.put_object(key=f"meetings/20240501_0930/{job_id}/{filename}", content_bytes=b"media")
    event = {"channel": "C1", "ts": "100.1"}
    worker.tracker.create(job_id, fields={"gcs_paths": [uri], "file_names": [filename], "slack_event": event})
    return {"jobId": job_id, "gcsPaths": [uri], "fileNames": [filename], "slackEvent": event}


def test_successful_run_reaches_summarizing_and_reports_transcript(storage):
    worker = _worker(storage)
    message = _seed(worker, storage)

    outcome = worker.process(message)

    assert outcome.status == "success"
    assert outcome.transcript_url == "object://local/minutes/meetings/20240501_0930/job_w1/transcript.json"
    record = worker.tracker.get("job_w1")
    assert record["status"] == "summarizing"
    assert record["result"]["audioUrl"].endswith("/job_w1/audio.flac")

    assert worker.transcoder.calls == ["meeting.mp4"]
    assert storage.get_object(storage_uri=record["result"]["audioUrl"]) == b"fLaCmedia"
    document = json.loads(storage.get_object(storage_uri=outcome.transcript_url))
    assert document["metadata"]["fileNames"] == ["meeting.mp4"]

    [payload] = worker.callback_sink.payloads
    assert payload.status == "success"
    assert payload.metadata["channel"] == "C1"


def test_flac_input_skips_transcoding(storage):
    worker = _worker(storage)
    message = _seed(worker, storage, filename="call.flac")

    outcome = worker.process(message)

    assert outcome.status == "success"
    assert worker.transcoder.calls == []
    assert worker.recognizer.calls[0]["content"] == b"media"


def test_analyze_failure_never_enters_persist(storage):
    recognizer = FakeRecognizer()
    recognizer.error = "speech recognition failed: timeout"
    worker = _worker(storage, recognizer=recognizer)
    message = _seed(worker, storage)

    outcome = worker.process(message)

    assert outcome.status == "failure"
    assert outcome.failed_stage == "analyze"
    record = worker.tracker.get("job_w1")
    assert record["status"] == "failed"
    assert record["failed_stage"] == "analyze"
    names = [uri.rsplit("/", 1)[-1] for uri in storage.list_objects(prefix="meetings/20240501_0930/job_w1/")]
    assert "transcript.json" not in names
    [payload] = worker.callback_sink.payloads
    assert payload.status == "failure"
    assert payload.error == "speech recognition failed: timeout"


def test_fetch_failure_when_namespace_has_no_media(storage):
    worker = _worker(storage)
    uri = storage.put_object(key="meetings/20240501_0930/job_w2/notes.txt", content_bytes=b"text")
    worker.tracker.create("job_w2", fields={"gcs_paths": [uri]})

    outcome = worker.process({"jobId": "job_w2", "gcsPaths": [uri], "fileNames": ["notes.txt"]})

    assert outcome.status == "failure"
    assert outcome.failed_stage == "fetch"
    assert worker.tracker.get("job_w2")["status"] == "failed"


def test_namespace_is_found_by_scanning_when_message_has_no_paths(storage):
    worker = _worker(storage)
    _seed(worker, storage, job_id="job_w3")

    outcome = worker.process({"jobId": "job_w3"})

    assert outcome.status == "success"
    payload = worker.callback_sink.payloads[0]
    assert payload.metadata["channel"] == "C1"


def test_invalid_message_is_dropped():
    worker = _worker(None)
    assert worker.process({"gcsPaths": ["object://local/minutes/x"]}) is None


def test_undeliverable_success_callback_fails_job_and_notifies(storage):
    worker = _worker(storage, sink=CollectingSink(fail=True))
    message = _seed(worker, storage)

    outcome = worker.process(message)

    assert outcome.status == "success"
    record = worker.tracker.get("job_w1")
    assert record["status"] == "failed"
    assert "callback could not be delivered" in record["error_details"]
    assert len(worker.notifier.messages) == 1
    assert worker.notifier.messages[0]["thread_ts"] == "100.1"


def test_redelivered_message_for_terminal_job_is_skipped(storage):
    worker = _worker(storage)
    message = _seed(worker, storage)
    worker.process(message)
    worker.tracker.update("job_w1", status="completed", fields={"result": {"notionUrl": "https://notion.test/p"}})
    transcript_uri = worker.tracker.get("job_w1")["result"]["transcriptUrl"]
    before = storage.get_object(storage_uri=transcript_uri)

    outcome = worker.process(message)

    assert outcome.status == "skipped"
    assert len(worker.recognizer.calls) == 1
    assert worker.transcoder.calls == ["meeting.mp4"]
    assert len(worker.callback_sink.payloads) == 1
    assert storage.get_object(storage_uri=transcript_uri) == before
    assert worker.tracker.get("job_w1")["status"] == "completed"
