"""Worker State Machine.

One queue message drives one job through four sequential stages::

    fetch -> transform -> analyze -> persist

``pending -> processing_audio`` happens before fetch, ``transcribing`` before
analyze and ``summarizing`` after persist. Any stage failure moves the job to
``failed`` and still produces a failure callback, so the conversation is
always told how the job ended.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from minutes_pipeline.callbacks import CallbackSink
from minutes_pipeline.errors import StageError
from minutes_pipeline.job_records import (
    FAILED,
    PROCESSING_AUDIO,
    SUMMARIZING,
    TERMINAL_STATUSES,
    TRANSCRIBING,
    JobTracker,
)
from minutes_pipeline.object_storage import (
    MEETINGS_ROOT,
    ObjectStorageBackend,
    clean_segment,
    file_extension,
    is_media_file,
    parse_storage_uri,
)
from minutes_pipeline.schemas import CallbackPayload, EventContext, JobMessage
from minutes_pipeline.slack import ConversationNotifier
from minutes_pipeline.speech import SpeechRecognizer

logger = logging.getLogger(__name__)

AUDIO_ARTIFACT = "audio.flac"
TRANSCRIPT_ARTIFACT = "transcript.json"
_DERIVED_ARTIFACTS = {AUDIO_ARTIFACT, TRANSCRIPT_ARTIFACT}


@dataclass
class WorkerOutcome:
    job_id: str
    status: str
    transcript_url: str | None = None
    error: str | None = None
    failed_stage: str | None = None


def _basename(storage_uri: str) -> str:
    return storage_uri.rsplit("/", 1)[-1]


class WorkerStateMachine:
    def __init__(
        self,
        *,
        tracker: JobTracker,
        storage: ObjectStorageBackend,
        transcoder: Any,
        recognizer: SpeechRecognizer,
        callback_sink: CallbackSink,
        notifier: ConversationNotifier,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tracker = tracker
        self.storage = storage
        self.transcoder = transcoder
        self.recognizer = recognizer
        self.callback_sink = callback_sink
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(UTC))

    def process(self, payload: dict[str, Any]) -> WorkerOutcome | None:
        try:
            message = JobMessage.model_validate(payload)
        except ValidationError as exc:
            logger.error("job_message_invalid errors=%s", exc.error_count())
            return None

        job_id = message.job_id
        record = self.tracker.get(job_id)
        if record is not None and record.get("status") in TERMINAL_STATUSES:
            logger.info("job_message_skipped job_id=%s status=%s", job_id, record["status"])
            return WorkerOutcome(job_id=job_id, status="skipped")
        context = message.slack_event or self._context_from_record(job_id)
        stage = "fetch"
        logger.info("job_processing_started job_id=%s files=%s", job_id, len(message.gcs_paths))
        try:
            self.tracker.update(job_id, status=PROCESSING_AUDIO)
            prefix, media_uri = self._fetch(message)

            stage = "transform"
            audio_uri, audio_bytes = self._transform(prefix=prefix, media_uri=media_uri)

            stage = "analyze"
            self.tracker.update(job_id, status=TRANSCRIBING)
            transcript = self.recognizer.transcribe(
                audio_uri=self.storage.native_uri(storage_uri=audio_uri),
                content=audio_bytes,
            )

            stage = "persist"
            transcript_uri = self._persist(
                job_id=job_id,
                prefix=prefix,
                transcript=transcript,
                media_uri=media_uri,
                audio_uri=audio_uri,
                message=message,
                context=context,
            )
        except Exception as exc:
            failed_stage = exc.stage if isinstance(exc, StageError) else stage
            error = str(exc) or exc.__class__.__name__
            logger.error("job_stage_failed job_id=%s stage=%s error=%s", job_id, failed_stage, error)
            self.tracker.update(job_id, status=FAILED, fields={"error_details": error, "failed_stage": failed_stage})
            outcome = WorkerOutcome(job_id=job_id, status="failure", error=error, failed_stage=failed_stage)
            self._report(outcome, context=context, file_names=message.file_names)
            return outcome

        self.tracker.update(
            job_id,
            status=SUMMARIZING,
            fields={"result": {"transcriptUrl": transcript_uri, "audioUrl": audio_uri}},
        )
        outcome = WorkerOutcome(job_id=job_id, status="success", transcript_url=transcript_uri)
        self._report(outcome, context=context, file_names=message.file_names)
        return outcome

    def _context_from_record(self, job_id: str) -> EventContext | None:
        record = self.tracker.get(job_id) or {}
        event = record.get("slack_event") or {}
        if not event.get("channel") or not event.get("ts"):
            return None
        return EventContext.model_validate(event)

    def _job_prefix(self, message: JobMessage) -> str:
        for uri in message.gcs_paths:
            try:
                key = parse_storage_uri(uri)["key"]
            except ValueError:
                continue
            if f"/{clean_segment(message.job_id)}/" in f"/{key}":
                return key.rsplit("/", 1)[0] + "/"
        for uri in self.storage.list_objects(prefix=f"{MEETINGS_ROOT}/"):
            key = parse_storage_uri(uri)["key"]
            marker = f"/{clean_segment(message.job_id)}/"
            if marker in key:
                return key[: key.index(marker) + len(marker)]
        raise StageError(stage="fetch", message=f"no staged artifacts found for job {message.job_id}")

    def _fetch(self, message: JobMessage) -> tuple[str, str]:
        prefix = self._job_prefix(message)
        candidates = [
            uri
            for uri in self.storage.list_objects(prefix=prefix)
            if is_media_file(_basename(uri)) and _basename(uri) not in _DERIVED_ARTIFACTS
        ]
        if not candidates:
            raise StageError(stage="fetch", message="no media file found in the job namespace")
        preferred = [uri for uri in message.gcs_paths if uri in candidates]
        media_uri = (preferred or candidates)[0]
        logger.info("media_selected job_id=%s uri=%s", message.job_id, media_uri)
        return prefix, media_uri

    def _transform(self, *, prefix: str, media_uri: str) -> tuple[str, bytes]:
        media = self.storage.get_object(storage_uri=media_uri)
        name = _basename(media_uri)
        if file_extension(name) == "flac":
            audio = media
        else:
            audio = self.transcoder.to_flac(content=media, source_name=name)
        audio_uri = self.storage.put_object(key=f"{prefix}{AUDIO_ARTIFACT}", content_bytes=audio, content_type="audio/flac")
        return audio_uri, audio

    def _persist(
        self,
        *,
        job_id: str,
        prefix: str,
        transcript: str,
        media_uri: str,
        audio_uri: str,
        message: JobMessage,
        context: EventContext | None,
    ) -> str:
        document = {
            "jobId": job_id,
            "transcript": transcript,
            "timestamp": self._clock().isoformat(),
            "metadata": {
                "videoUrl": self.storage.public_url(storage_uri=media_uri),
                "audioUrl": self.storage.public_url(storage_uri=audio_uri),
                "channel": context.channel if context else None,
                "ts": context.ts if context else None,
                "thread_ts": context.thread_ts if context else None,
                "fileNames": list(message.file_names),
            },
        }
        return self.storage.put_object(
            key=f"{prefix}{TRANSCRIPT_ARTIFACT}",
            content_bytes=json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8"),
            content_type="application/json",
        )

    def _report(self, outcome: WorkerOutcome, *, context: EventContext | None, file_names: list[str]) -> None:
        metadata: dict[str, Any] = {"fileNames": list(file_names)}
        if context is not None:
            metadata.update({"channel": context.channel, "ts": context.ts, "thread_ts": context.thread_ts})
        payload = CallbackPayload(
            job_id=outcome.job_id,
            status=outcome.status,
            transcript_url=outcome.transcript_url,
            error=outcome.error,
            metadata=metadata,
        )
        try:
            self.callback_sink.send(payload)
            return
        except Exception as exc:
            logger.error("callback_delivery_failed job_id=%s status=%s error=%s", outcome.job_id, outcome.status, exc)

        if outcome.status == "success":
            self.tracker.update(
                outcome.job_id,
                status=FAILED,
                fields={"error_details": "transcript ready but the completion callback could not be delivered"},
            )
        if context is not None:
            reason = outcome.error or "the completion callback could not be delivered"
            self.notifier.post_message(
                channel=context.channel,
                text=f"An error occurred while processing the audio/video: {reason}",
                thread_ts=context.reply_ts,
            )
