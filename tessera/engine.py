"""Asynchronous task queue running translate and review jobs."""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .batching import BatchBuilder, TokenCounter, estimate_tokens
from .errors import NotFoundError, TransientError, ValidationError
from .policy import RetryPolicy, Sleeper
from .providers import ProviderGateway, ProviderRegistry, build_provider
from .review import AIReviewer, ReviewProcessor, ensure_segment_ids
from .store import SegmentStore
from .structures import (
    JobOutcome,
    Progress,
    Task,
    TaskReport,
    TaskStatus,
    TaskType,
    utcnow,
)
from .translator import FileTranslator, TranslationOptions

if TYPE_CHECKING:
    from .configuration import TesseraConfig

logger = logging.getLogger(__name__)

Handler = Callable[[Task], Awaitable[JobOutcome]]


def _require_text(payload: Mapping[str, Any], key: str) -> None:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' is required and must be a non-empty string.")


class TaskQueue:
    """Fixed pool of workers pulling tasks from a priority queue.

    Higher ``priority`` runs first; equal priorities run in submission order.
    """

    def __init__(
        self,
        store: SegmentStore,
        providers: ProviderRegistry,
        *,
        workers: int = 5,
        max_input_tokens: int = 96000,
        token_counter: TokenCounter = estimate_tokens,
        rate_limit_calls: int = 60,
        rate_limit_period: float = 60.0,
        request_timeout: Optional[float] = 120.0,
        max_attempts: int = RetryPolicy.MAX_ATTEMPTS,
        backoff_unit: float = 1.0,
        max_task_retries: int = 3,
        review_batch_size: int = 10,
        review_concurrency: int = 5,
        default_model: Optional[str] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if workers < 1:
            raise ValidationError("The task queue needs at least one worker.")
        self.store = store
        self.workers = workers
        self.max_task_retries = max(0, max_task_retries)
        self.default_model = default_model

        self.retry = RetryPolicy(
            max_attempts=max_attempts, backoff_unit=backoff_unit, sleep=sleep
        )
        self.gateway = ProviderGateway(
            providers,
            max_calls=rate_limit_calls,
            period=rate_limit_period,
            timeout=request_timeout,
        )
        self.translator = FileTranslator(
            store, self.gateway, BatchBuilder(max_input_tokens, token_counter), self.retry
        )
        self.reviews = ReviewProcessor(
            store,
            AIReviewer(self.gateway),
            self.retry,
            batch_size=review_batch_size,
            concurrency=review_concurrency,
        )

        self._sleep = sleep
        self._tasks: Dict[str, Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._runners: List[asyncio.Task] = []
        self._timers: Dict[asyncio.Task, Task] = {}
        self._handlers: Dict[TaskType, Handler] = {
            TaskType.TRANSLATE_FILE: self._run_translate_file,
            TaskType.TRANSLATE_PROJECT: self._run_translate_project,
            TaskType.REVIEW_SEGMENT: self._run_review_segment,
            TaskType.REVIEW_BATCH: self._run_review_batch,
            TaskType.REVIEW_FILE: self._run_review_file,
            TaskType.REVIEW_TEXT: self._run_review_text,
        }

    @classmethod
    def from_settings(
        cls,
        store: SegmentStore,
        settings: TesseraConfig,
        *,
        providers: Optional[ProviderRegistry] = None,
        **overrides: Any,
    ) -> "TaskQueue":
        """Build a queue whose limits and provider come from configuration."""

        if providers is None:
            options: Dict[str, Any] = {"timeout": settings.TESSERA_REQUEST_TIMEOUT}
            provider_name = settings.LLM_PROVIDER
            if provider_name == "openai":
                options.update(api_key=settings.OPENAI_API_KEY, model=settings.TESSERA_MODEL)
            elif provider_name == "azure_openai":
                options.update(
                    api_key=settings.AZURE_OPENAI_API_KEY,
                    endpoint=settings.AZURE_OPENAI_ENDPOINT,
                    api_version=settings.AZURE_OPENAI_API_VERSION,
                    deployment_name=settings.AZURE_OPENAI_DEPLOYMENT_NAME,
                )
            else:
                options = {}
            providers = ProviderRegistry.single(
                build_provider(
                    provider_name, debug=settings.TESSERA_PROVIDER_DEBUG, **options
                )
            )

        params: Dict[str, Any] = dict(
            workers=settings.TESSERA_TRANSLATION_WORKERS,
            max_input_tokens=settings.TESSERA_MAX_INPUT_TOKENS,
            rate_limit_calls=settings.TESSERA_RATE_LIMIT_CALLS,
            rate_limit_period=settings.TESSERA_RATE_LIMIT_PERIOD,
            request_timeout=settings.TESSERA_REQUEST_TIMEOUT,
            max_attempts=settings.TESSERA_MAX_RETRIES,
            max_task_retries=settings.TESSERA_MAX_RETRIES,
            review_concurrency=settings.TESSERA_REVIEW_CONCURRENCY,
            default_model=settings.TESSERA_MODEL,
        )
        params.update(overrides)
        return cls(store, providers, **params)

    # lifecycle

    @property
    def running(self) -> bool:
        return bool(self._runners)

    async def start(self) -> None:
        if self._runners:
            return
        self._runners = [
            asyncio.create_task(self._worker(n), name=f"tessera-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("Started task queue with %d workers", self.workers)

    async def stop(self, *, drain: bool = False) -> None:
        """Stop the workers, optionally after the queue has drained.

        Without ``drain`` a running task is interrupted and finishes as
        cancelled. Queued tasks, including those waiting out a retry delay,
        stay pending for the next ``start``.
        """

        if drain:
            while self._timers or not self._queue.empty():
                await self._queue.join()
                if self._timers:
                    await asyncio.gather(*list(self._timers), return_exceptions=True)
        timers = list(self._timers.items())
        for timer, task in timers:
            if not timer.done():
                timer.cancel()
                if task.status is TaskStatus.PENDING:
                    self._enqueue(task)
        for runner in self._runners:
            runner.cancel()
        await asyncio.gather(
            *self._runners, *(timer for timer, _ in timers), return_exceptions=True
        )
        self._runners = []
        self._timers.clear()
        for task in self._tasks.values():
            if task.status is TaskStatus.ACTIVE:
                logger.warning("Task %s interrupted by queue shutdown", task.id)
                self._finish(task, TaskStatus.CANCELLED, error="Interrupted by queue shutdown.")
        logger.info("Task queue stopped")

    async def __aenter__(self) -> "TaskQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # submission surface

    def submit(
        self,
        task_type: TaskType | str,
        payload: Optional[Mapping[str, Any]] = None,
        priority: int = 0,
    ) -> str:
        """Validate ``payload`` and enqueue a task, returning its id."""

        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise ValidationError(f"Unknown task type: {task_type}") from None
        payload = dict(payload or {})
        self._validate(task_type, payload)

        task = Task(
            id=uuid.uuid4().hex,
            type=task_type,
            payload=payload,
            priority=int(priority),
        )
        self._tasks[task.id] = task
        self._done[task.id] = asyncio.Event()
        self._enqueue(task)
        logger.info(
            "Submitted %s task %s (priority %d)", task_type.value, task.id, task.priority
        )
        return task.id

    def get_status(self, task_id: str) -> TaskReport:
        task = self._task(task_id)
        outcome = task.outcome or JobOutcome()
        return TaskReport(
            task_id=task.id,
            type=task.type,
            status=task.status,
            progress=Progress(task.progress.processed, task.progress.total),
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            total=outcome.total,
            first_error=outcome.first_error or task.error,
            retry_count=task.retry_count,
            result=task.result,
            error=task.error,
        )

    def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not started. Running tasks are left alone."""

        task = self._task(task_id)
        if task.status is not TaskStatus.PENDING:
            return False
        self._finish(task, TaskStatus.CANCELLED)
        logger.info("Cancelled task %s", task_id)
        return True

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskReport:
        self._task(task_id)
        await asyncio.wait_for(self._done[task_id].wait(), timeout)
        return self.get_status(task_id)

    # internals

    def _task(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError(f"Task not found: {task_id}") from None

    def _validate(self, task_type: TaskType, payload: Dict[str, Any]) -> None:
        options = payload.get("options")
        if options is not None and not isinstance(options, Mapping):
            raise ValidationError("'options' must be a mapping.")

        if task_type is TaskType.TRANSLATE_FILE:
            _require_text(payload, "file_id")
            TranslationOptions.from_payload(options)
        elif task_type is TaskType.TRANSLATE_PROJECT:
            _require_text(payload, "project_id")
            TranslationOptions.from_payload(options)
        elif task_type is TaskType.REVIEW_SEGMENT:
            _require_text(payload, "segment_id")
            self.reviews.options(options)
        elif task_type is TaskType.REVIEW_BATCH:
            payload["segment_ids"] = ensure_segment_ids(payload.get("segment_ids"))
            self.reviews.options(options)
        elif task_type is TaskType.REVIEW_FILE:
            _require_text(payload, "file_id")
            self.reviews.options(options)
        elif task_type is TaskType.REVIEW_TEXT:
            _require_text(payload, "original_text")
            _require_text(payload, "translated_text")
            self.reviews.options(options)

    def _enqueue(self, task: Task) -> None:
        self._queue.put_nowait((-task.priority, next(self._sequence), task.id))

    async def _requeue_later(self, task: Task, delay: float) -> None:
        if delay:
            await self._sleep(delay)
        if task.status is TaskStatus.PENDING:
            self._enqueue(task)

    async def _worker(self, number: int) -> None:
        while True:
            _, _, task_id = await self._queue.get()
            try:
                task = self._tasks.get(task_id)
                if task is None or task.status is not TaskStatus.PENDING:
                    continue
                await self._execute(task)
            except Exception:
                logger.exception("Worker %d crashed while handling task %s", number, task_id)
            finally:
                self._queue.task_done()

    async def _execute(self, task: Task) -> None:
        task.status = TaskStatus.ACTIVE
        task.started_at = task.started_at or utcnow()
        logger.info("Running %s task %s", task.type.value, task.id)
        handler = self._handlers[task.type]
        try:
            outcome = await handler(task)
        except ValidationError as exc:
            logger.error("Task %s rejected: %s", task.id, exc)
            self._finish(task, TaskStatus.FAILED, error=str(exc))
        except TransientError as exc:
            if task.retry_count < self.max_task_retries:
                delay = self.retry.delay_for(task.retry_count)
                task.retry_count += 1
                task.status = TaskStatus.PENDING
                task.error = str(exc)
                logger.warning(
                    "Task %s failed (%s); re-queued, retry %d of %d.",
                    task.id,
                    exc,
                    task.retry_count,
                    self.max_task_retries,
                )
                timer = asyncio.create_task(self._requeue_later(task, delay))
                self._timers[timer] = task
                timer.add_done_callback(lambda done: self._timers.pop(done, None))
            else:
                logger.error("Task %s failed after %d retries: %s", task.id, task.retry_count, exc)
                self._finish(task, TaskStatus.FAILED, error=str(exc))
        except Exception as exc:
            logger.exception("Task %s failed unexpectedly", task.id)
            self._finish(task, TaskStatus.FAILED, error=str(exc) or exc.__class__.__name__)
        else:
            task.outcome = outcome
            task.result = outcome.to_dict()
            if outcome.is_failure:
                self._finish(task, TaskStatus.FAILED, error=outcome.first_error)
            else:
                self._finish(task, TaskStatus.COMPLETED)

    def _finish(self, task: Task, status: TaskStatus, error: Optional[str] = None) -> None:
        task.status = status
        task.error = error
        task.finished_at = utcnow()
        if status is TaskStatus.COMPLETED and task.progress.total == 0 and task.outcome:
            task.progress = Progress(task.outcome.total, task.outcome.total)
        self._done[task.id].set()
        logger.info("Task %s finished as %s", task.id, status.value)

    def _progress(self, task: Task) -> Callable[[int, int], None]:
        def update(processed: int, total: int) -> None:
            task.progress = Progress(processed, total)

        return update

    # handlers

    def _translation_options(self, task: Task) -> TranslationOptions:
        options = TranslationOptions.from_payload(task.payload.get("options"))
        options.model = options.model or self.default_model
        return options

    def _review_options(self, task: Task):
        options = self.reviews.options(task.payload.get("options"))
        options.model = options.model or self.default_model
        return options

    async def _run_translate_file(self, task: Task) -> JobOutcome:
        options = self._translation_options(task)
        outcome = await self.translator.translate_file(
            task.payload["file_id"], options, self._progress(task)
        )
        self._follow_with_review(task, options, outcome)
        return outcome

    async def _run_translate_project(self, task: Task) -> JobOutcome:
        options = self._translation_options(task)
        outcome = await self.translator.translate_project(
            task.payload["project_id"], options, self._progress(task)
        )
        self._follow_with_review(task, options, outcome)
        return outcome

    def _follow_with_review(
        self, task: Task, options: TranslationOptions, outcome: JobOutcome
    ) -> None:
        segment_ids = outcome.details.get("translated_segment_ids") or []
        if not options.review_after_translation or not segment_ids:
            return
        review_options = dict(task.payload.get("options") or {})
        review_options.pop("review_after_translation", None)
        outcome.details["review_task_id"] = self.submit(
            TaskType.REVIEW_BATCH,
            {"segment_ids": list(segment_ids), "options": review_options},
            priority=task.priority,
        )

    async def _run_review_segment(self, task: Task) -> JobOutcome:
        options = self._review_options(task)
        segment_id = task.payload["segment_id"]
        try:
            result = await self.reviews.review_segment_with_retry(segment_id, options)
        except ValidationError:
            raise
        except Exception as exc:
            outcome = JobOutcome(total=1, failed=1, first_error=str(exc))
            outcome.errors.append({"item": segment_id, "error": str(exc)})
            return outcome
        return JobOutcome(total=1, succeeded=1, details=result)

    async def _run_review_batch(self, task: Task) -> JobOutcome:
        return await self.reviews.review_batch(
            task.payload["segment_ids"], self._review_options(task), self._progress(task)
        )

    async def _run_review_file(self, task: Task) -> JobOutcome:
        return await self.reviews.review_file(
            task.payload["file_id"], self._review_options(task), self._progress(task)
        )

    async def _run_review_text(self, task: Task) -> JobOutcome:
        review = await self.reviews.review_text(
            task.payload["original_text"],
            task.payload["translated_text"],
            self._review_options(task),
        )
        return JobOutcome(total=1, succeeded=1, details=review)
