from __future__ import annotations

import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock
from urllib.error import URLError

import pytest

from minutes_pipeline.errors import ApiError, StageError
from minutes_pipeline.http_client import http_json, http_request
from minutes_pipeline.slack import SlackClient
from minutes_pipeline.speech import GoogleSpeechRecognizer, join_transcript
from minutes_pipeline.transcoder import FfmpegTranscoder


def test_http_json_wraps_transport_errors(monkeypatch):
    def fake_urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr("minutes_pipeline.http_client.request.urlopen", fake_urlopen)
    with pytest.raises(ApiError) as exc:
        http_json("https://api.test/x", timeout_s=1, upstream="notion")
    assert exc.value.code == "NOTION_UPSTREAM_ERROR"
    assert exc.value.http_status == 503
    assert exc.value.retryable is True


class ChunkedResponse:
    def __init__(self, chunks, headers=None):
        self.chunks = list(chunks)
        self.headers = headers or {}
        self.reads = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self, size=-1):
        self.reads += 1
        return self.chunks.pop(0) if self.chunks else b""


def test_http_request_stops_reading_once_size_limit_is_crossed(monkeypatch):
    resp = ChunkedResponse([b"a" * 4, b"b" * 4, b"c" * 4, b"d" * 4])
    monkeypatch.setattr("minutes_pipeline.http_client.request.urlopen", lambda req, timeout: resp)

    with pytest.raises(ApiError) as exc:
        http_request("https://files.slack.test/F1", timeout_s=1, upstream="slack", max_bytes=6)
    assert exc.value.code == "FILE_TOO_LARGE"
    assert exc.value.http_status == 413
    assert resp.reads == 2
    assert len(resp.chunks) == 2


def test_http_request_rejects_declared_oversized_body_before_reading(monkeypatch):
    resp = ChunkedResponse([b"x"], headers={"Content-Length": "1073741825"})
    monkeypatch.setattr("minutes_pipeline.http_client.request.urlopen", lambda req, timeout: resp)

    with pytest.raises(ApiError) as exc:
        http_request("https://files.slack.test/F1", timeout_s=1, upstream="slack", max_bytes=1024)
    assert exc.value.code == "FILE_TOO_LARGE"
    assert resp.reads == 0


def test_http_request_streams_body_within_limit(monkeypatch):
    resp = ChunkedResponse([b"abc", b"def"])
    monkeypatch.setattr("minutes_pipeline.http_client.request.urlopen", lambda req, timeout: resp)
    assert http_request("https://files.slack.test/F1", timeout_s=1, upstream="slack", max_bytes=6) == b"abcdef"


def test_slack_post_message_without_token_is_skipped(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("no HTTP call expected")

    monkeypatch.setattr("minutes_pipeline.slack.http_json", fail)
    assert SlackClient(bot_token="").post_message(channel="C1", text="hi") is False


def test_slack_post_message_reports_api_rejection(monkeypatch):
    sent = []

    def fake_http_json(url, *, method, payload, headers, timeout_s, upstream):
        sent.append((url, payload, headers))
        return {"ok": False, "error": "channel_not_found"}

    monkeypatch.setattr("minutes_pipeline.slack.http_json", fake_http_json)
    client = SlackClient(bot_token="xoxb-test", api_base_url="https://slack.test/api")

    assert client.post_message(channel="C1", text="hi", thread_ts="100.1") is False
    url, payload, headers = sent[0]
    assert url == "https://slack.test/api/chat.postMessage"
    assert payload == {"channel": "C1", "text": "hi", "thread_ts": "100.1"}
    assert headers["Authorization"] == "Bearer xoxb-test"


def test_slack_post_message_never_raises_on_transport_error(monkeypatch):
    def boom(*args, **kwargs):
        raise ApiError(code="SLACK_UPSTREAM_ERROR", message="down", error_class="external_api", retryable=True, http_status=503)

    monkeypatch.setattr("minutes_pipeline.slack.http_json", boom)
    assert SlackClient(bot_token="xoxb-test").post_message(channel="C1", text="hi") is False


def test_slack_download_rejects_login_page_and_forwards_size_limit(monkeypatch):
    calls = []
    responses = iter([b"<!DOCTYPE html><html>login</html>", b"0123456789"])

    def fake_http_request(url, **kwargs):
        calls.append(kwargs)
        return next(responses)

    monkeypatch.setattr("minutes_pipeline.slack.http_request", fake_http_request)
    client = SlackClient(bot_token="xoxb-test")

    with pytest.raises(ApiError) as html:
        client.download_file(url="https://files.slack.test/F1")
    assert html.value.code == "SLACK_DOWNLOAD_UNAUTHORIZED"

    assert client.download_file(url="https://files.slack.test/F1", max_bytes=64) == b"0123456789"
    assert calls[1]["max_bytes"] == 64
    assert calls[1]["headers"]["Authorization"] == "Bearer xoxb-test"


def test_transcoder_reports_missing_binary(monkeypatch):
    monkeypatch.setattr("minutes_pipeline.transcoder.shutil.which", lambda name: None)
    with pytest.raises(StageError) as exc:
        FfmpegTranscoder().to_flac(content=b"x", source_name="a.mp4")
    assert exc.value.stage == "transform"


def test_transcoder_surfaces_ffmpeg_failure(monkeypatch):
    monkeypatch.setattr("minutes_pipeline.transcoder.shutil.which", lambda name: "/usr/bin/ffmpeg")
    commands = []

    def fake_run(cmd, capture_output, timeout, check):
        commands.append(cmd)
        return subprocess.CompletedProcess(cmd, 1, stdout=b"", stderr=b"Invalid data found when processing input")

    monkeypatch.setattr("minutes_pipeline.transcoder.subprocess.run", fake_run)
    with pytest.raises(StageError, match="Invalid data found"):
        FfmpegTranscoder().to_flac(content=b"x", source_name="a.mp4")
    cmd = commands[0]
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-ac") + 1] == "1"


def test_join_transcript_takes_first_alternative():
    response = SimpleNamespace(
        results=[
            SimpleNamespace(alternatives=[SimpleNamespace(transcript=" hello "), SimpleNamespace(transcript="x")]),
            SimpleNamespace(alternatives=[]),
            SimpleNamespace(alternatives=[SimpleNamespace(transcript="world")]),
        ]
    )
    assert join_transcript(response) == "hello world"


def test_google_speech_recognizer_with_fake_module(monkeypatch):
    fake_speech = MagicMock()
    operation = fake_speech.SpeechClient.return_value.long_running_recognize.return_value
    operation.result.return_value = SimpleNamespace(
        results=[SimpleNamespace(alternatives=[SimpleNamespace(transcript="konnichiwa")])]
    )
    monkeypatch.setattr("minutes_pipeline.speech._import_speech", lambda: fake_speech)

    recognizer = GoogleSpeechRecognizer(language_code="ja-JP", timeout_s=12)
    assert recognizer.transcribe(audio_uri="gs://bucket/audio.flac", content=b"flac") == "konnichiwa"

    fake_speech.RecognitionAudio.assert_called_once_with(uri="gs://bucket/audio.flac")
    operation.result.assert_called_once_with(timeout=12)
    assert fake_speech.RecognitionConfig.call_args.kwargs["language_code"] == "ja-JP"


def test_google_speech_recognizer_wraps_failures(monkeypatch):
    fake_speech = MagicMock()
    fake_speech.SpeechClient.return_value.long_running_recognize.side_effect = RuntimeError("deadline exceeded")
    monkeypatch.setattr("minutes_pipeline.speech._import_speech", lambda: fake_speech)

    with pytest.raises(StageError) as exc:
        GoogleSpeechRecognizer().transcribe(audio_uri="object://local/b/k", content=b"flac")
    assert exc.value.stage == "analyze"
    fake_speech.RecognitionAudio.assert_called_once_with(content=b"flac")
