"""Builds every pipeline collaborator from the environment.

Backends that cannot be constructed (missing driver, unsupported name)
degrade to their in-memory counterparts with a warning, unless
``REQUIRE_TRUESTACK`` is set, in which case construction errors are fatal.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from minutes_pipeline.callbacks import CallbackSink, HttpCallbackSink, InlineCallbackSink, QueueCallbackSink
from minutes_pipeline.config import PipelineConfig, true_stack_required
from minutes_pipeline.dispatcher import JobDispatcher
from minutes_pipeline.idempotency import InMemoryIdempotencyStore, create_idempotency_store_from_env
from minutes_pipeline.job_records import InMemoryJobRecordStore, JobTracker, create_job_store_from_env
from minutes_pipeline.knowledge_base import InMemoryKnowledgeBase, NotionKnowledgeBase
from minutes_pipeline.object_storage import ObjectStorageBackend, create_object_storage_from_env
from minutes_pipeline.queue_backend import InMemoryQueueBackend, create_queue_from_env
from minutes_pipeline.reconciler import CallbackReconciler, ReconcileResult
from minutes_pipeline.schemas import CallbackPayload
from minutes_pipeline.slack import RecordingNotifier, SlackClient
from minutes_pipeline.speech import GoogleSpeechRecognizer
from minutes_pipeline.summarizer import MockSummarizer, create_summarizer
from minutes_pipeline.transcoder import FfmpegTranscoder
from minutes_pipeline.worker import WorkerStateMachine
from minutes_pipeline.worker_runtime import WorkerRuntime, create_worker_runtime_from_env

logger = logging.getLogger(__name__)


def _with_fallback(name: str, env: Mapping[str, str], build: Callable[[], Any], fallback: Callable[[], Any]) -> Any:
    try:
        return build()
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("backend_degraded component=%s error=%s; using in-memory implementation", name, exc)
        return fallback()


@dataclass
class PipelineRuntime:
    config: PipelineConfig
    idempotency: Any
    job_store: Any
    tracker: JobTracker
    queue: Any
    storage: ObjectStorageBackend
    notifier: Any
    file_source: Any
    summarizer: Any
    knowledge_base: Any
    callback_sink: CallbackSink
    dispatcher: JobDispatcher
    worker: WorkerStateMachine
    reconciler: CallbackReconciler
    worker_runtime: WorkerRuntime

    def handle_callback(self, payload: dict[str, Any]) -> ReconcileResult:
        return self.reconciler.reconcile(CallbackPayload.model_validate(payload))

    def reset(self) -> None:
        for component in (self.idempotency, self.job_store, self.queue, self.notifier, self.knowledge_base):
            reset = getattr(component, "reset", None) or getattr(component, "clear", None)
            if callable(reset):
                reset()


def build_runtime(
    environ: Mapping[str, str] | None = None,
    *,
    storage: ObjectStorageBackend | None = None,
    notifier: Any = None,
    file_source: Any = None,
    transcoder: Any = None,
    recognizer: Any = None,
    summarizer: Any = None,
    knowledge_base: Any = None,
) -> PipelineRuntime:
    env = os.environ if environ is None else environ
    config = PipelineConfig.from_env(env)
    strict = true_stack_required(env)

    idempotency = _with_fallback(
        "idempotency",
        env,
        lambda: create_idempotency_store_from_env(env),
        lambda: InMemoryIdempotencyStore(default_ttl_s=config.idempotency_ttl_s),
    )
    job_store = _with_fallback("job_store", env, lambda: create_job_store_from_env(env), InMemoryJobRecordStore)
    tracker = JobTracker(job_store)
    queue = _with_fallback("queue", env, lambda: create_queue_from_env(env), InMemoryQueueBackend)
    storage = storage or create_object_storage_from_env(dict(env))

    slack = SlackClient(
        bot_token=config.slack_bot_token,
        api_base_url=config.slack_api_base_url,
        timeout_s=config.http_timeout_s,
        download_timeout_s=config.file_download_timeout_s,
    )
    if notifier is None:
        if config.slack_bot_token:
            notifier = slack
        elif strict:
            raise RuntimeError("SLACK_BOT_TOKEN must be set when REQUIRE_TRUESTACK=true")
        else:
            logger.warning("slack_notifier_disabled reason=missing_bot_token; recording notifications in memory")
            notifier = RecordingNotifier()
    file_source = file_source or slack

    if summarizer is None:
        try:
            summarizer = create_summarizer(
                provider=config.summarizer_provider,
                api_key=config.gemini_api_key,
                model=config.gemini_model,
                timeout_s=config.http_timeout_s,
            )
        except (RuntimeError, ValueError) as exc:
            if strict:
                raise
            logger.warning("summarizer_degraded error=%s; using mock summarizer", exc)
            summarizer = MockSummarizer()

    if knowledge_base is None:
        if config.notion_api_key and config.notion_database_id:
            knowledge_base = NotionKnowledgeBase(
                api_key=config.notion_api_key,
                database_id=config.notion_database_id,
                timeout_s=config.http_timeout_s,
            )
        elif strict:
            raise RuntimeError("NOTION_API_KEY and NOTION_DATABASE_ID must be set when REQUIRE_TRUESTACK=true")
        else:
            logger.warning("knowledge_base_degraded reason=missing_notion_config; keeping pages in memory")
            knowledge_base = InMemoryKnowledgeBase()

    reconciler = CallbackReconciler(
        tracker=tracker,
        storage=storage,
        summarizer=summarizer,
        knowledge_base=knowledge_base,
        notifier=notifier,
        idempotency=idempotency,
        notify_ttl_s=config.idempotency_ttl_s,
        http_timeout_s=config.http_timeout_s,
    )

    callback_sink: CallbackSink
    if config.callback_mode == "http":
        callback_sink = HttpCallbackSink(url=config.callback_url, timeout_s=config.http_timeout_s)
    elif config.callback_mode == "inline":
        callback_sink = InlineCallbackSink(reconciler.reconcile)
    elif config.callback_mode == "queue":
        callback_sink = QueueCallbackSink(queue=queue, queue_name=config.callback_queue_name)
    else:
        raise RuntimeError(f"unsupported callback mode: {config.callback_mode}")

    dispatcher = JobDispatcher(
        config=config,
        idempotency=idempotency,
        tracker=tracker,
        queue=queue,
        storage=storage,
        notifier=notifier,
        file_source=file_source,
    )
    worker = WorkerStateMachine(
        tracker=tracker,
        storage=storage,
        transcoder=transcoder or FfmpegTranscoder(),
        recognizer=recognizer
        or GoogleSpeechRecognizer(language_code=config.speech_language_code, timeout_s=config.speech_timeout_s),
        callback_sink=callback_sink,
        notifier=notifier,
    )

    worker_runtime = create_worker_runtime_from_env(
        queue_backend=queue,
        job_handler=worker.process,
        callback_handler=lambda payload: reconciler.reconcile(CallbackPayload.model_validate(payload)),
        environ=env,
    )
    return PipelineRuntime(
        config=config,
        idempotency=idempotency,
        job_store=job_store,
        tracker=tracker,
        queue=queue,
        storage=storage,
        notifier=notifier,
        file_source=file_source,
        summarizer=summarizer,
        knowledge_base=knowledge_base,
        callback_sink=callback_sink,
        dispatcher=dispatcher,
        worker=worker,
        reconciler=reconciler,
        worker_runtime=worker_runtime,
    )
