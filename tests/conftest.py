import json
import pathlib
import sys
import time

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from minutes_pipeline.errors import ApiError, StageError
from minutes_pipeline.knowledge_base import InMemoryKnowledgeBase
from minutes_pipeline.main import create_app
from minutes_pipeline.object_storage import LocalObjectStorage, ObjectStorageConfig
from minutes_pipeline.runtime import build_runtime
from minutes_pipeline.security import compute_slack_signature
from minutes_pipeline.slack import RecordingNotifier
from minutes_pipeline.summarizer import MockSummarizer

SIGNING_SECRET = "test_signing_secret"


class FakeFileSource:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.downloads: list[str] = []

    def download_file(self, *, url: str, max_bytes: int | None = None) -> bytes:
        self.downloads.append(url)
        if url not in self.files:
            raise ApiError(
                code="SLACK_UPSTREAM_ERROR",
                message=f"slack HTTP 404: {url}",
                error_class="external_api",
                retryable=True,
                http_status=502,
            )
        return self.files[url]


class FakeTranscoder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def to_flac(self, *, content: bytes, source_name: str) -> bytes:
        self.calls.append(source_name)
        return b"fLaC" + content


class FakeRecognizer:
    def __init__(self, transcript: str = "Weekly sync. We agreed to ship on Friday.") -> None:
        self.transcript = transcript
        self.error: str | None = None
        self.calls: list[dict[str, object]] = []

    def transcribe(self, *, audio_uri: str | None = None, content: bytes | None = None) -> str:
        self.calls.append({"audio_uri": audio_uri, "content": content})
        if self.error:
            raise StageError(stage="analyze", message=self.error)
        return self.transcript


def make_storage(root: pathlib.Path) -> LocalObjectStorage:
    return LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="minutes",
            root=str(root),
            prefix="",
            project="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
        )
    )


@pytest.fixture(autouse=True)
def pipeline_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SLACK_SIGNING_SECRET", SIGNING_SECRET)
    monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
    monkeypatch.delenv("REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("MAX_FILE_SIZE_BYTES", raising=False)
    monkeypatch.setenv("IDEMPOTENCY_BACKEND", "memory")
    monkeypatch.setenv("JOB_STORE_BACKEND", "memory")
    monkeypatch.setenv("QUEUE_BACKEND", "memory")
    monkeypatch.setenv("CALLBACK_MODE", "queue")
    monkeypatch.setenv("SUMMARIZER_PROVIDER", "mock")
    monkeypatch.setenv("OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    yield


@pytest.fixture
def storage(tmp_path: pathlib.Path) -> LocalObjectStorage:
    return make_storage(tmp_path / "object_store")


@pytest.fixture
def runtime(storage: LocalObjectStorage):
    return build_runtime(
        storage=storage,
        notifier=RecordingNotifier(),
        file_source=FakeFileSource(),
        transcoder=FakeTranscoder(),
        recognizer=FakeRecognizer(),
        summarizer=MockSummarizer(),
        knowledge_base=InMemoryKnowledgeBase(),
    )


@pytest.fixture
def client(runtime) -> TestClient:
    return TestClient(create_app(runtime))


def message_envelope(
    *,
    event_id: str = "Ev001",
    channel: str = "C001",
    ts: str = "100.1",
    files: list[dict] | None = None,
    **event_fields,
) -> dict:
    if files is None:
        files = [
            {
                "id": "F001",
                "name": "meeting.mp4",
                "mimetype": "video/mp4",
                "size": 11,
                "url_private": "https://files.slack.test/F001/meeting.mp4",
            }
        ]
    event = {"type": "message", "channel": channel, "ts": ts, "user": "U001", "text": "weekly sync", "files": files}
    event.update(event_fields)
    return {"type": "event_callback", "event_id": event_id, "team_id": "T001", "event": event}


@pytest.fixture
def post_slack_event(client: TestClient):
    def _post(payload: dict, *, secret: str = SIGNING_SECRET, timestamp: int | None = None):
        body = json.dumps(payload).encode("utf-8")
        stamp = str(int(time.time()) if timestamp is None else timestamp)
        signature = compute_slack_signature(signing_secret=secret, timestamp=stamp, body=body)
        return client.post(
            "/api/slack/events",
            content=body,
            headers={
                "content-type": "application/json",
                "x-slack-request-timestamp": stamp,
                "x-slack-signature": signature,
            },
        )

    return _post
