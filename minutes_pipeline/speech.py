from __future__ import annotations

import logging
from typing import Any, Protocol

from minutes_pipeline.errors import StageError
from minutes_pipeline.transcoder import SAMPLE_RATE_HZ

logger = logging.getLogger(__name__)


class SpeechRecognizer(Protocol):
    def transcribe(self, *, audio_uri: str | None = None, content: bytes | None = None) -> str: ...


def _import_speech() -> Any:
    try:
        from google.cloud import speech  # type: ignore
    except ImportError as exc:
        raise RuntimeError("google-cloud-speech is required for speech recognition; install google-cloud-speech") from exc
    return speech


def join_transcript(response: Any) -> str:
    parts: list[str] = []
    for result in getattr(response, "results", None) or []:
        alternatives = getattr(result, "alternatives", None) or []
        if alternatives:
            parts.append(str(alternatives[0].transcript).strip())
    return " ".join(part for part in parts if part)


class GoogleSpeechRecognizer:
    """Long-running recognition with a bounded wait on the operation."""

    def __init__(self, *, language_code: str = "ja-JP", timeout_s: float = 900.0, model: str = "latest_long") -> None:
        self._language_code = language_code
        self._timeout_s = timeout_s
        self._model = model
        self._client: Any = None

    def _speech_client(self) -> Any:
        if self._client is None:
            self._client = _import_speech().SpeechClient()
        return self._client

    def transcribe(self, *, audio_uri: str | None = None, content: bytes | None = None) -> str:
        if not audio_uri and content is None:
            raise StageError(stage="analyze", message="no audio supplied for recognition")
        speech = _import_speech()
        config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.FLAC,
            sample_rate_hertz=SAMPLE_RATE_HZ,
            language_code=self._language_code,
            enable_automatic_punctuation=True,
            model=self._model,
        )
        if audio_uri and audio_uri.startswith("gs://"):
            audio = speech.RecognitionAudio(uri=audio_uri)
        else:
            audio = speech.RecognitionAudio(content=content)
        try:
            operation = self._speech_client().long_running_recognize(config=config, audio=audio)
            logger.info("speech_operation_started language=%s timeout_s=%s", self._language_code, self._timeout_s)
            response = operation.result(timeout=self._timeout_s)
        except Exception as exc:
            raise StageError(stage="analyze", message=f"speech recognition failed: {exc}") from exc
        transcript = join_transcript(response)
        logger.info("speech_operation_completed characters=%s", len(transcript))
        return transcript
