"""Callback Reconciler: turns a worker outcome into the final minutes document.

A ``failure`` outcome is reported and recorded. A ``success`` outcome runs
transcript fetch, summarisation and page creation; each step may fail on its
own and is reported the same way, without retrying here. Redelivered
callbacks are safe: completed jobs are not reprocessed and every conversation
notification is claimed once in the idempotency store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from minutes_pipeline.errors import StageError
from minutes_pipeline.http_client import http_request
from minutes_pipeline.idempotency import IdempotencyStore
from minutes_pipeline.job_records import COMPLETED, FAILED, JobTracker
from minutes_pipeline.knowledge_base import KnowledgeBase
from minutes_pipeline.object_storage import ObjectStorageBackend
from minutes_pipeline.schemas import CallbackPayload
from minutes_pipeline.slack import ConversationNotifier
from minutes_pipeline.summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    job_id: str
    status: str
    document_url: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jobId": self.job_id, "status": self.status}
        if self.document_url:
            data["notionPageUrl"] = self.document_url
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class _Target:
    channel: str
    thread_ts: str


class CallbackReconciler:
    def __init__(
        self,
        *,
        tracker: JobTracker,
        storage: ObjectStorageBackend,
        summarizer: Summarizer,
        knowledge_base: KnowledgeBase,
        notifier: ConversationNotifier,
        idempotency: IdempotencyStore,
        notify_ttl_s: int = 24 * 60 * 60,
        http_timeout_s: float = 30.0,
    ) -> None:
        self.tracker = tracker
        self.storage = storage
        self.summarizer = summarizer
        self.knowledge_base = knowledge_base
        self.notifier = notifier
        self.idempotency = idempotency
        self.notify_ttl_s = notify_ttl_s
        self.http_timeout_s = http_timeout_s

    def reconcile(self, payload: CallbackPayload) -> ReconcileResult:
        job_id = payload.job_id
        record = self.tracker.get(job_id)
        logger.info("callback_received job_id=%s status=%s", job_id, payload.status)

        if payload.status == "failure":
            error = payload.error or "unknown error"
            if record is not None and record.get("status") == COMPLETED:
                logger.warning("failure_callback_for_completed_job job_id=%s error=%s", job_id, error)
                return ReconcileResult(
                    job_id=job_id,
                    status="already_completed",
                    document_url=(record.get("result") or {}).get("notionUrl"),
                )
            if record is None or record.get("status") != FAILED:
                self.tracker.update(job_id, status=FAILED, fields={"error_details": error})
            self._notify_failure(job_id, self._target(payload.metadata, record), error)
            return ReconcileResult(job_id=job_id, status="error_logged", error=error)

        if record is not None and record.get("status") == COMPLETED:
            logger.info("callback_already_completed job_id=%s", job_id)
            return ReconcileResult(
                job_id=job_id,
                status="already_completed",
                document_url=(record.get("result") or {}).get("notionUrl"),
            )
        if record is not None and record.get("status") == FAILED:
            logger.warning("callback_for_failed_job job_id=%s", job_id)
            return ReconcileResult(job_id=job_id, status="already_failed", error=record.get("error_details"))

        target = self._target(payload.metadata, record)
        step = "fetch_transcript"
        try:
            if not payload.transcript_url:
                raise StageError(stage=step, message="callback carries no transcript URL")
            transcript_doc = self._load_transcript(payload.transcript_url)
            metadata = transcript_doc.get("metadata") or {}
            target = self._target(metadata, record) or target
            transcript = str(transcript_doc.get("transcript") or "")

            step = "summarize"
            summary = self.summarizer.summarize(transcript=transcript, metadata=metadata)

            step = "create_document"
            page = self.knowledge_base.create_minutes_page(
                summary=summary,
                transcript=transcript,
                transcript_url=self._public_url(payload.transcript_url),
                video_url=metadata.get("videoUrl"),
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("reconcile_failed job_id=%s step=%s error=%s", job_id, step, error)
            self.tracker.update(job_id, status=FAILED, fields={"error_details": error, "failed_stage": step})
            self._notify_failure(job_id, target, error)
            return ReconcileResult(job_id=job_id, status="failed", error=error)

        self.tracker.update(
            job_id,
            status=COMPLETED,
            fields={
                "result": {
                    "transcriptUrl": payload.transcript_url,
                    "notionUrl": page.url,
                    "notionPageId": page.page_id,
                    "title": page.title,
                }
            },
        )
        if target is not None and self._claim_notification(job_id, "success"):
            self.notifier.post_message(
                channel=target.channel,
                text=f"Minutes from the audio/video are ready!\n<{page.url}|Open in Notion>",
                thread_ts=target.thread_ts,
            )
        logger.info("job_completed job_id=%s document=%s", job_id, page.url)
        return ReconcileResult(job_id=job_id, status="completed", document_url=page.url)

    @staticmethod
    def _target(metadata: dict[str, Any] | None, record: dict[str, Any] | None) -> _Target | None:
        for source in (metadata or {}, (record or {}).get("slack_event") or {}):
            channel = source.get("channel")
            thread_ts = source.get("thread_ts") or source.get("ts")
            if channel and thread_ts:
                return _Target(channel=str(channel), thread_ts=str(thread_ts))
        return None

    def _claim_notification(self, job_id: str, outcome: str) -> bool:
        key = f"notify:{job_id}:{outcome}"
        if self.idempotency.seen_or_mark(key, ttl_s=self.notify_ttl_s):
            logger.info("notification_already_sent job_id=%s outcome=%s", job_id, outcome)
            return False
        return True

    def _notify_failure(self, job_id: str, target: _Target | None, error: str) -> None:
        if target is None:
            logger.warning("failure_not_notified job_id=%s reason=no_conversation", job_id)
            return
        if not self._claim_notification(job_id, "failure"):
            return
        self.notifier.post_message(
            channel=target.channel,
            text=f"An error occurred while processing the audio/video: {error}",
            thread_ts=target.thread_ts,
        )

    def _load_transcript(self, transcript_url: str) -> dict[str, Any]:
        if transcript_url.startswith("object://"):
            raw = self.storage.get_object(storage_uri=transcript_url)
        else:
            raw = http_request(transcript_url, timeout_s=self.http_timeout_s, upstream="transcript")
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict) or "transcript" not in data:
            raise StageError(stage="fetch_transcript", message="transcript artifact is malformed")
        return data

    def _public_url(self, transcript_url: str) -> str:
        if transcript_url.startswith("object://"):
            return self.storage.public_url(storage_uri=transcript_url)
        return transcript_url
