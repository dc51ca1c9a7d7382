from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from minutes_pipeline.config import env_int

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0
    discarded: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: int(getattr(self, f.name)) for f in fields(self)}

    def add(self, other: Mapping[str, int]) -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + int(other.get(f.name, 0)))


class WorkerRuntime:
    """Resident consumer for the job queue and the callback queue.

    Job messages are acknowledged whatever the outcome: a failed job is
    recovered through the retry endpoint, never by redelivery. Callback
    messages are nacked with a delay when the handler raises, up to
    ``callback_max_attempts`` deliveries, then discarded.
    """

    def __init__(
        self,
        *,
        queue_backend: Any,
        job_handler: Callable[[dict[str, Any]], Any],
        callback_handler: Callable[[dict[str, Any]], Any],
        job_queue_name: str = "transcription-jobs",
        callback_queue_name: str = "job-callbacks",
        max_messages_per_iteration: int = 10,
        poll_interval_ms: int = 200,
        callback_max_attempts: int = 3,
        callback_retry_delay_ms: int = 5000,
    ) -> None:
        self.queue_backend = queue_backend
        self.job_handler = job_handler
        self.callback_handler = callback_handler
        self.job_queue_name = job_queue_name
        self.callback_queue_name = callback_queue_name
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.callback_max_attempts = max(1, int(callback_max_attempts))
        self.callback_retry_delay_ms = max(0, int(callback_retry_delay_ms))

    def _process_job_message(self, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(queue_name=self.job_queue_name)
        if msg is None:
            return False
        stats.processed += 1
        try:
            outcome = self.job_handler(msg.payload)
        except Exception:
            logger.exception("job_handler_crashed message_id=%s", msg.message_id)
            outcome = None
        self.queue_backend.ack(message_id=msg.message_id)
        stats.acked += 1
        status = getattr(outcome, "status", "") if outcome is not None else ""
        if status == "success":
            stats.succeeded += 1
        elif status == "skipped":
            stats.skipped += 1
        else:
            stats.failed += 1
        return True

    def _process_callback_message(self, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(queue_name=self.callback_queue_name)
        if msg is None:
            return False
        stats.processed += 1
        try:
            self.callback_handler(msg.payload)
        except ValueError as exc:
            logger.error("callback_payload_invalid message_id=%s error=%s", msg.message_id, exc)
            self.queue_backend.nack(message_id=msg.message_id, requeue=False)
            stats.discarded += 1
            stats.failed += 1
            return True
        except Exception as exc:
            deliveries = msg.attempt + 1
            if deliveries < self.callback_max_attempts:
                logger.warning(
                    "callback_retry_scheduled message_id=%s attempt=%s error=%s",
                    msg.message_id,
                    deliveries,
                    exc,
                )
                self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=self.callback_retry_delay_ms)
                stats.requeued += 1
            else:
                logger.error("callback_discarded message_id=%s attempts=%s error=%s", msg.message_id, deliveries, exc)
                self.queue_backend.nack(message_id=msg.message_id, requeue=False)
                stats.discarded += 1
                stats.failed += 1
            return True
        self.queue_backend.ack(message_id=msg.message_id)
        stats.acked += 1
        stats.succeeded += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            progressed = self._process_job_message(stats)
            if stats.processed < self.max_messages_per_iteration:
                progressed = self._process_callback_message(stats) or progressed
            if not progressed:
                break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    queue_backend: Any,
    job_handler: Callable[[dict[str, Any]], Any],
    callback_handler: Callable[[dict[str, Any]], Any],
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        queue_backend=queue_backend,
        job_handler=job_handler,
        callback_handler=callback_handler,
        job_queue_name=env.get("JOB_QUEUE_NAME", "transcription-jobs").strip() or "transcription-jobs",
        callback_queue_name=env.get("CALLBACK_QUEUE_NAME", "job-callbacks").strip() or "job-callbacks",
        max_messages_per_iteration=env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=10, minimum=1),
        poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        callback_max_attempts=env_int(env, "CALLBACK_MAX_ATTEMPTS", default=3, minimum=1),
        callback_retry_delay_ms=env_int(env, "CALLBACK_RETRY_DELAY_MS", default=5000, minimum=0),
    )
