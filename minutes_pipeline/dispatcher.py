"""Job Dispatcher: turns one inbound chat event into a staged, queued job.

The only step allowed to refuse work is the duplicate gate. Everything after
it is best-effort: staging failures are reported per file, record writes are
delegated to ``JobTracker`` and publish failures mark the job ``failed`` and
tell the conversation, but the caller always gets a normal result back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from minutes_pipeline.config import PipelineConfig
from minutes_pipeline.errors import ApiError
from minutes_pipeline.idempotency import IdempotencyStore, event_fingerprint
from minutes_pipeline.job_records import FAILED, JobTracker
from minutes_pipeline.object_storage import MEDIA_EXTENSIONS, ObjectStorageBackend, is_media_file, staged_key
from minutes_pipeline.schemas import EventContext, JobMessage, RetryJobRequest, SlackEnvelope, SlackEvent, SlackFile
from minutes_pipeline.slack import ConversationNotifier

logger = logging.getLogger(__name__)

STATUS_DUPLICATE = "duplicate_event_skipped"
STATUS_IGNORED = "ignored"
STATUS_CREATED = "processing_job_created_and_published"
STATUS_PUBLISH_FAILED = "job_publish_failed"
STATUS_ALL_FILES_FAILED = "all_files_failed"


@dataclass
class FileFailure:
    name: str
    reason: str
    too_large: bool = False


@dataclass
class DispatchResult:
    status: str
    event_hash: str | None = None
    job_id: str | None = None
    gcs_paths: list[str] = field(default_factory=list)
    file_names: list[str] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.status == STATUS_DUPLICATE

    def to_response(self) -> dict[str, Any]:
        if self.duplicate:
            return {"status": STATUS_DUPLICATE, "event_hash": self.event_hash}
        body: dict[str, Any] = {"ok": True, "status": self.status, "event_hash": self.event_hash}
        if self.status == STATUS_IGNORED:
            body["processed"] = True
        if self.job_id:
            body["jobId"] = self.job_id
        if self.failures:
            body["failures"] = [{"name": f.name, "reason": f.reason} for f in self.failures]
        return body


def _format_size_limit(limit_bytes: int) -> str:
    if limit_bytes % (1024**3) == 0:
        return f"{limit_bytes // 1024**3} GB"
    if limit_bytes % (1024**2) == 0:
        return f"{limit_bytes // 1024**2} MB"
    return f"{limit_bytes} bytes"


# mimetype subtypes that do not spell their usual file extension
_SUBTYPE_EXTENSIONS = {
    "quicktime": "mov",
    "x-msvideo": "avi",
    "x-matroska": "mkv",
    "mpeg": "mp3",
    "x-wav": "wav",
    "wave": "wav",
    "x-m4a": "m4a",
    "x-flac": "flac",
}


def staged_file_name(file: SlackFile) -> str:
    """Name used for the staged object; gains a media extension when the upload has none."""
    name = file.name or file.id
    if is_media_file(name):
        return name
    ext = file.filetype.strip().lstrip(".").lower()
    if ext not in MEDIA_EXTENSIONS:
        subtype = file.mimetype.partition("/")[2].strip().lower()
        ext = _SUBTYPE_EXTENSIONS.get(subtype, subtype)
    if ext in MEDIA_EXTENSIONS:
        return f"{name}.{ext}"
    return name


def _ack_message(job_id: str, staged: int, failures: list[FileFailure]) -> str:
    lines = [f"Created processing job (ID: {job_id})", f"Processing files: {staged}"]
    if failures:
        lines.append(f"Failed files: {len(failures)}")
        lines.extend(f"• {f.name}: {f.reason}" for f in failures)
    return "\n".join(lines)


class JobDispatcher:
    def __init__(
        self,
        *,
        config: PipelineConfig,
        idempotency: IdempotencyStore,
        tracker: JobTracker,
        queue: Any,
        storage: ObjectStorageBackend,
        notifier: ConversationNotifier,
        file_source: Any,
        job_id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.idempotency = idempotency
        self.tracker = tracker
        self.queue = queue
        self.storage = storage
        self.notifier = notifier
        self.file_source = file_source
        self._job_id_factory = job_id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock or (lambda: datetime.now(UTC))

    def handle_envelope(self, envelope: SlackEnvelope) -> DispatchResult:
        event = envelope.event
        if envelope.type != "event_callback" or event is None:
            return DispatchResult(status=STATUS_IGNORED)
        if not (envelope.event_id and event.channel and event.ts):
            logger.info("event_ignored reason=missing_identity type=%s", event.type)
            return DispatchResult(status=STATUS_IGNORED)

        event_hash = event_fingerprint(event_id=envelope.event_id, channel=event.channel, ts=event.ts)
        if self.idempotency.seen_or_mark(f"event:{event_hash}", ttl_s=self.config.idempotency_ttl_s):
            logger.info(
                "duplicate_event_skipped event_id=%s channel=%s ts=%s",
                envelope.event_id,
                event.channel,
                event.ts,
            )
            return DispatchResult(status=STATUS_DUPLICATE, event_hash=event_hash)

        if event.type != "message" or not event.files or event.bot_id:
            logger.info("event_ignored type=%s files=%s bot=%s", event.type, len(event.files), bool(event.bot_id))
            return DispatchResult(status=STATUS_IGNORED, event_hash=event_hash)

        result = self._dispatch_event(event)
        result.event_hash = event_hash
        return result

    def _context(self, event: SlackEvent) -> EventContext:
        return EventContext(
            channel=str(event.channel),
            ts=str(event.ts),
            text=event.text or "",
            thread_ts=event.thread_ts,
            user=event.user,
        )

    def _stage_file(self, *, job_id: str, file: SlackFile, now: datetime) -> str:
        limit = self.config.max_file_size_bytes
        if file.size > limit:
            raise ApiError(
                code="FILE_TOO_LARGE",
                message=f"file exceeds the {_format_size_limit(limit)} size limit",
                error_class="validation",
                retryable=False,
                http_status=413,
            )
        if not file.url_private:
            raise ApiError(
                code="FILE_URL_MISSING",
                message="file has no private download URL",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        content = self.file_source.download_file(url=file.url_private, max_bytes=limit)
        return self.storage.put_object(
            key=staged_key(job_id, staged_file_name(file), now=now),
            content_bytes=content,
            content_type=file.mimetype or None,
        )

    def _dispatch_event(self, event: SlackEvent) -> DispatchResult:
        job_id = self._job_id_factory()
        now = self._clock()
        context = self._context(event)
        logger.info("dispatch_started job_id=%s channel=%s files=%s", job_id, context.channel, len(event.files))

        gcs_paths: list[str] = []
        file_names: list[str] = []
        failures: list[FileFailure] = []
        for file in event.files:
            name = staged_file_name(file)
            try:
                gcs_paths.append(self._stage_file(job_id=job_id, file=file, now=now))
                file_names.append(name)
            except ApiError as exc:
                logger.warning("file_staging_failed job_id=%s file=%s error=%s", job_id, name, exc.message)
                failures.append(FileFailure(name=name, reason=exc.message, too_large=exc.code == "FILE_TOO_LARGE"))
            except Exception as exc:
                logger.warning("file_staging_failed job_id=%s file=%s error=%s", job_id, name, exc)
                failures.append(FileFailure(name=name, reason=str(exc) or exc.__class__.__name__))

        if not gcs_paths:
            self._notify_all_failed(context, failures)
            return DispatchResult(status=STATUS_ALL_FILES_FAILED, failures=failures)

        return self._create_and_publish(
            job_id=job_id,
            context=context,
            gcs_paths=gcs_paths,
            file_names=file_names,
            failures=failures,
            record_fields={
                "slack_event": event.model_dump(mode="json", exclude_none=True),
                "file_ids": [f.id for f in event.files],
            },
        )

    def _notify_all_failed(self, context: EventContext, failures: list[FileFailure]) -> None:
        if failures and all(f.too_large for f in failures):
            limit = _format_size_limit(self.config.max_file_size_bytes)
            text = f"The file is too large to process. The maximum size is {limit}.\n" + "\n".join(
                f"• {f.name}" for f in failures
            )
        else:
            text = "Failed to process the files. None of the files could be uploaded.\n" + "\n".join(
                f"• {f.name}: {f.reason}" for f in failures
            )
        self.notifier.post_message(channel=context.channel, text=text, thread_ts=context.reply_ts)

    def _create_and_publish(
        self,
        *,
        job_id: str,
        context: EventContext,
        gcs_paths: list[str],
        file_names: list[str],
        failures: list[FileFailure],
        record_fields: dict[str, Any],
    ) -> DispatchResult:
        self.tracker.create(
            job_id,
            fields={"gcs_paths": gcs_paths, "file_names": file_names, **record_fields},
        )
        message = JobMessage(job_id=job_id, gcs_paths=gcs_paths, file_names=file_names, slack_event=context)
        try:
            queued = self.queue.enqueue(queue_name=self.config.job_queue_name, payload=message.to_wire())
        except Exception as exc:
            logger.error("job_publish_failed job_id=%s error=%s", job_id, exc)
            self.tracker.update(
                job_id,
                status=FAILED,
                fields={"error_details": f"failed to queue job: {exc}"},
            )
            self.notifier.post_message(
                channel=context.channel,
                text=f"Failed to queue processing job (ID: {job_id}). Please retry later.",
                thread_ts=context.reply_ts,
            )
            return DispatchResult(
                status=STATUS_PUBLISH_FAILED,
                job_id=job_id,
                gcs_paths=gcs_paths,
                file_names=file_names,
                failures=failures,
            )
        logger.info("job_published job_id=%s message_id=%s", job_id, queued.message_id)
        self.notifier.post_message(
            channel=context.channel,
            text=_ack_message(job_id, len(gcs_paths), failures),
            thread_ts=context.reply_ts,
        )
        return DispatchResult(
            status=STATUS_CREATED,
            job_id=job_id,
            gcs_paths=gcs_paths,
            file_names=file_names,
            failures=failures,
        )

    def redispatch(self, original_job_id: str, request: RetryJobRequest) -> DispatchResult:
        """Re-run a job under a fresh id, copying its staged artifacts into the new namespace."""
        source_paths = list(request.gcs_paths)
        source_names = list(request.file_names)
        if not source_paths:
            original = self.tracker.get(original_job_id) or {}
            source_paths = list(original.get("gcs_paths") or [])
            source_names = source_names or list(original.get("file_names") or [])
        if not source_paths:
            raise ApiError(
                code="RETRY_NO_ARTIFACTS",
                message="no staged artifacts known for this job; supply gcsPaths",
                error_class="validation",
                retryable=False,
                http_status=400,
            )

        job_id = self._job_id_factory()
        now = self._clock()
        context = EventContext(
            channel=request.channel,
            ts=request.ts,
            text=request.text,
            thread_ts=request.thread_ts,
            user=request.user,
        )
        gcs_paths: list[str] = []
        file_names: list[str] = []
        failures: list[FileFailure] = []
        for index, source in enumerate(source_paths):
            name = source_names[index] if index < len(source_names) else source.rsplit("/", 1)[-1]
            try:
                content = self.storage.get_object(storage_uri=source)
                gcs_paths.append(
                    self.storage.put_object(key=staged_key(job_id, name, now=now), content_bytes=content)
                )
                file_names.append(name)
            except Exception as exc:
                logger.warning("retry_copy_failed job_id=%s source=%s error=%s", job_id, source, exc)
                failures.append(FileFailure(name=name, reason=str(exc) or exc.__class__.__name__))

        if not gcs_paths:
            self._notify_all_failed(context, failures)
            return DispatchResult(status=STATUS_ALL_FILES_FAILED, failures=failures)

        logger.info("job_redispatched retry_of=%s job_id=%s", original_job_id, job_id)
        return self._create_and_publish(
            job_id=job_id,
            context=context,
            gcs_paths=gcs_paths,
            file_names=file_names,
            failures=failures,
            record_fields={
                "retry_of": original_job_id,
                "slack_event": context.model_dump(mode="json", exclude_none=True),
                "file_ids": list(request.file_ids),
                "metadata": dict(request.metadata),
            },
        )
