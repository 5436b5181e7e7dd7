from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedProvider, char_counter, seed_file

from tessera.engine import TaskQueue
from tessera.errors import NotFoundError, TranslationProviderError, ValidationError
from tessera.providers import ProviderRegistry
from tessera.store import InMemorySegmentStore
from tessera.structures import SegmentStatus, TaskStatus, TaskType


def _queue(store, provider, **options):
    params = dict(
        workers=2,
        token_counter=char_counter,
        backoff_unit=0,
        rate_limit_calls=1000,
        rate_limit_period=1.0,
    )
    params.update(options)
    return TaskQueue(store, ProviderRegistry.single(provider), **params)


@pytest.mark.parametrize(
    "task_type, payload",
    [
        ("translate-file", {}),
        ("translate-project", {"project_id": ""}),
        ("review-segment", {"segment_id": None}),
        ("review-batch", {"segment_ids": []}),
        ("review-batch", {"segment_ids": "abc"}),
        ("review-file", {}),
        ("review-text", {"original_text": "Hi"}),
        ("review-file", {"file_id": "f", "options": {"include_statuses": ["bogus"]}}),
        ("summarise", {"file_id": "f"}),
    ],
)
def test_submit_rejects_bad_payloads_synchronously(store, provider, task_type, payload):
    queue = _queue(store, provider)
    with pytest.raises(ValidationError):
        queue.submit(task_type, payload)


def test_unknown_task_id(store, provider):
    queue = _queue(store, provider)
    with pytest.raises(NotFoundError):
        queue.get_status("missing")
    with pytest.raises(NotFoundError):
        queue.cancel("missing")


def test_translate_file_task_completes_with_counts(store, provider):
    async def scenario():
        record, _ = await seed_file(store, ["Hello", "World"])
        async with _queue(store, provider) as queue:
            task_id = queue.submit(TaskType.TRANSLATE_FILE, {"file_id": record.id})
            return await queue.wait(task_id, timeout=5)

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.COMPLETED
    assert (report.succeeded, report.failed, report.total) == (2, 0, 2)
    assert report.progress.processed == 2
    assert report.progress.percent == 100
    assert report.first_error is None
    assert report.to_dict()["result"]["translated_segment_ids"]


def test_review_segment_on_pending_segment_fails_without_retry(store, provider):
    async def scenario():
        _, stored = await seed_file(store, ["Hello"])
        async with _queue(store, provider) as queue:
            task_id = queue.submit(TaskType.REVIEW_SEGMENT, {"segment_id": stored[0].id})
            return await queue.wait(task_id, timeout=5)

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.FAILED
    assert report.retry_count == 0
    assert "Invalid segment status" in report.error
    assert provider.requests == []


def test_review_batch_task_reports_partial_success(store):
    def review(request):
        if "Original text:\nthree\n" in request.user_prompt:
            raise TranslationProviderError("model overloaded")
        return '{"issues": [], "scores": [{"type": "overall", "score": 95}]}'

    provider = ScriptedProvider(review=review)

    async def scenario():
        _, stored = await seed_file(
            store,
            ["one", "two", "three", "four", "five"],
            status=SegmentStatus.TRANSLATED,
            translated=True,
        )
        async with _queue(store, provider) as queue:
            task_id = queue.submit(
                "review-batch",
                {"segment_ids": [s.id for s in stored], "options": {"stop_on_error": False}},
            )
            report = await queue.wait(task_id, timeout=5)
        return report, [await store.find_by_id(s.id) for s in stored]

    report, segments = asyncio.run(scenario())

    assert report.status is TaskStatus.COMPLETED
    assert (report.succeeded, report.failed, report.total) == (4, 1, 5)
    assert report.first_error == "model overloaded"
    assert report.result["success_count"] == 4
    assert report.result["error_count"] == 1
    completed = [s.index for s in segments if s.status is SegmentStatus.REVIEW_COMPLETED]
    assert completed == [0, 1, 3, 4]


def test_all_failed_job_is_reported_failed(store):
    def broken(request):
        raise TranslationProviderError("service down")

    provider = ScriptedProvider(translate=broken)

    async def scenario():
        record, _ = await seed_file(store, ["a", "b"])
        async with _queue(store, provider) as queue:
            return await queue.wait(
                queue.submit("translate-file", {"file_id": record.id}), timeout=5
            )

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.FAILED
    assert (report.succeeded, report.failed) == (0, 2)
    assert report.first_error == "service down"


def test_higher_priority_runs_first_and_ties_are_fifo(store, provider):
    async def scenario():
        records = [(await seed_file(store, [f"text {n}"]))[0] for n in range(4)]
        queue = _queue(store, provider, workers=1)
        low = queue.submit("translate-file", {"file_id": records[0].id}, priority=0)
        high = queue.submit("translate-file", {"file_id": records[1].id}, priority=5)
        tie_a = queue.submit("translate-file", {"file_id": records[2].id}, priority=1)
        tie_b = queue.submit("translate-file", {"file_id": records[3].id}, priority=1)
        async with queue:
            for task_id in (low, high, tie_a, tie_b):
                await queue.wait(task_id, timeout=5)

    asyncio.run(scenario())

    order = [
        next(n for n in range(4) if f"text {n}" in request.user_prompt)
        for request in provider.translate_requests
    ]
    assert order == [1, 2, 3, 0]


def test_cancel_only_affects_pending_tasks(store, provider):
    async def scenario():
        record, _ = await seed_file(store, ["a"])
        queue = _queue(store, provider)
        task_id = queue.submit("translate-file", {"file_id": record.id})
        assert queue.cancel(task_id) is True
        async with queue:
            report = await queue.wait(task_id, timeout=5)
            other = queue.submit("translate-file", {"file_id": record.id})
            await queue.wait(other, timeout=5)
            again = queue.cancel(other)
        return report, again, await store.find_by_file(record.id)

    report, again, segments = asyncio.run(scenario())

    assert report.status is TaskStatus.CANCELLED
    assert again is False
    assert segments[0].status is SegmentStatus.TRANSLATED


class FlakyStore(InMemorySegmentStore):
    """Raises a transient error from ``get_file`` a fixed number of times."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def get_file(self, file_id):
        if self.failures:
            self.failures -= 1
            raise TranslationProviderError("store connection reset")
        return await super().get_file(file_id)


def test_transient_task_error_is_requeued():
    store = FlakyStore(failures=0)
    provider = ScriptedProvider()

    async def scenario():
        record, _ = await seed_file(store, ["a"])
        store.failures = 2
        async with _queue(store, provider, max_task_retries=3) as queue:
            return await queue.wait(
                queue.submit("translate-file", {"file_id": record.id}), timeout=5
            )

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.COMPLETED
    assert report.retry_count == 2
    assert report.succeeded == 1


def test_transient_task_error_gives_up_after_max_retries():
    store = FlakyStore(failures=0)
    provider = ScriptedProvider()

    async def scenario():
        record, _ = await seed_file(store, ["a"])
        store.failures = 10
        async with _queue(store, provider, max_task_retries=2) as queue:
            return await queue.wait(
                queue.submit("translate-file", {"file_id": record.id}), timeout=5
            )

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.FAILED
    assert report.retry_count == 2
    assert report.error == "store connection reset"


def test_review_after_translation_submits_follow_up(store, provider):
    async def scenario():
        record, _ = await seed_file(store, ["Hello", "World"])
        async with _queue(store, provider) as queue:
            task_id = queue.submit(
                "translate-file",
                {"file_id": record.id, "options": {"review_after_translation": True}},
            )
            report = await queue.wait(task_id, timeout=5)
            review_id = report.result["review_task_id"]
            review = await queue.wait(review_id, timeout=5)
        return review, await store.find_by_file(record.id)

    review, segments = asyncio.run(scenario())

    assert review.status is TaskStatus.COMPLETED
    assert review.succeeded == 2
    assert all(s.status is SegmentStatus.REVIEW_COMPLETED for s in segments)


def test_review_text_task(store, provider):
    async def scenario():
        async with _queue(store, provider) as queue:
            return await queue.wait(
                queue.submit(
                    "review-text",
                    {"original_text": "Thank you", "translated_text": "Gracias"},
                ),
                timeout=5,
            )

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.COMPLETED
    assert report.result["statistics"]["translated_length"] == len("Gracias")


def test_translate_project_task_without_files_fails(store, provider):
    async def scenario():
        async with _queue(store, provider) as queue:
            return await queue.wait(
                queue.submit("translate-project", {"project_id": "nothing"}), timeout=5
            )

    report = asyncio.run(scenario())

    assert report.status is TaskStatus.FAILED
    assert "no files" in report.error
    assert report.retry_count == 0


def test_stop_with_drain_finishes_queued_work(store, provider):
    async def scenario():
        record, _ = await seed_file(store, ["a", "b"])
        queue = _queue(store, provider)
        await queue.start()
        task_id = queue.submit("translate-file", {"file_id": record.id})
        await queue.stop(drain=True)
        return queue.get_status(task_id), queue.running

    report, running = asyncio.run(scenario())

    assert report.status is TaskStatus.COMPLETED
    assert running is False


class GatedProvider(ScriptedProvider):
    """Holds every call until ``gate`` is opened."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = 0

    async def complete(self, request):
        self.waiting += 1
        await self.gate.wait()
        return await super().complete(request)


def test_stop_without_drain_cancels_running_task_and_keeps_queued_ones(store):
    provider = GatedProvider()

    async def scenario():
        first, _ = await seed_file(store, ["a"], name="first.txt")
        second, _ = await seed_file(store, ["b"], name="second.txt")
        queue = _queue(store, provider, workers=1)
        await queue.start()
        running_id = queue.submit("translate-file", {"file_id": first.id})
        queued_id = queue.submit("translate-file", {"file_id": second.id})
        while not provider.waiting:
            await asyncio.sleep(0.01)

        await queue.stop()
        interrupted = await queue.wait(running_id, timeout=1)
        waiting = queue.get_status(queued_id)

        provider.gate.set()
        async with queue:
            resumed = await queue.wait(queued_id, timeout=5)
        return interrupted, waiting, resumed

    interrupted, waiting, resumed = asyncio.run(scenario())

    assert interrupted.status is TaskStatus.CANCELLED
    assert interrupted.error == "Interrupted by queue shutdown."
    assert waiting.status is TaskStatus.PENDING
    assert resumed.status is TaskStatus.COMPLETED
    assert resumed.succeeded == 1
