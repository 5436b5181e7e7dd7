from __future__ import annotations

import asyncio
import json

import pytest

from conftest import ScriptedProvider, failing, make_gateway, review_json, seed_file

from tessera.errors import InvalidStateError, NotFoundError, ValidationError
from tessera.review import AIReviewer, ReviewOptions, ReviewProcessor, modification_degree
from tessera.structures import FileStatus, IssueSeverity, IssueType, SegmentStatus


def _processor(store, provider, retry):
    return ReviewProcessor(store, AIReviewer(make_gateway(provider)), retry)


def _options(**kwargs):
    return ReviewOptions(source_language="English", target_language="Spanish", **kwargs)


def test_reviewing_a_pending_segment_is_rejected_without_retry(store, provider, retry, sleeper):
    async def scenario():
        _, stored = await seed_file(store, ["Hello"])
        await _processor(store, provider, retry).review_segment_with_retry(
            stored[0].id, _options()
        )

    with pytest.raises(InvalidStateError):
        asyncio.run(scenario())
    assert provider.requests == []
    assert sleeper.delays == []


def test_review_segment_validation_order(store, provider, retry):
    processor = _processor(store, provider, retry)

    with pytest.raises(ValidationError):
        asyncio.run(processor.review_segment("", _options()))
    with pytest.raises(NotFoundError):
        asyncio.run(processor.review_segment("missing", _options()))

    async def without_translation():
        _, stored = await seed_file(store, ["Hi"], status=SegmentStatus.TRANSLATED)
        await processor.review_segment(stored[0].id, _options())

    with pytest.raises(ValidationError):
        asyncio.run(without_translation())
    assert provider.requests == []


def test_review_segment_stores_results(store, retry):
    provider = ScriptedProvider(
        review=lambda request: "```json\n"
        + review_json(
            suggestion="ES:¡Hola mundo!",
            issues=[
                {
                    "type": "style",
                    "severity": "low",
                    "description": "Missing exclamation marks",
                    "position": {"start": 0, "end": 3},
                    "suggestion": "¡Hola mundo!",
                },
                {
                    "type": "invented",
                    "description": "Position past the end",
                    "position": {"start": 5, "end": 500},
                },
            ],
            scores=[{"type": "overall", "score": 82}, {"type": "fluency", "score": 90}],
        )
        + "\n```"
    )

    async def scenario():
        _, stored = await seed_file(
            store, ["Hello world"], status=SegmentStatus.TRANSLATED, translated=True
        )
        result = await _processor(store, provider, retry).review_segment(
            stored[0].id, _options()
        )
        return result, await store.find_by_id(stored[0].id)

    result, segment = asyncio.run(scenario())

    assert result["status"] == "review_completed"
    assert result["issues_count"] == 2
    assert result["overall_score"] == 82
    assert segment.status is SegmentStatus.REVIEW_COMPLETED
    assert segment.suggested_translation == "ES:¡Hola mundo!"
    assert [s.type for s in segment.review_scores] == ["overall", "fluency"]
    first, second = segment.issues
    assert first.type is IssueType.STYLE
    assert first.severity is IssueSeverity.LOW
    assert (first.position.start, first.position.end) == (0, 3)
    assert second.type is IssueType.OTHER
    assert second.position is None
    assert segment.review_metadata.model == "fake-model"
    assert 0 < segment.review_metadata.modification_degree <= 1
    prompt = provider.review_requests[0].user_prompt
    assert "Hello world" in prompt and "ES:Hello world" in prompt
    assert "English" in prompt and "Spanish" in prompt


def test_unparseable_review_is_retried_then_marked_failed(store, retry, sleeper):
    provider = ScriptedProvider(review=lambda request: "I think it is fine.")

    async def scenario():
        _, stored = await seed_file(
            store, ["Hello"], status=SegmentStatus.TRANSLATED, translated=True
        )
        processor = _processor(store, provider, retry)
        with pytest.raises(Exception):
            await processor.review_segment_with_retry(stored[0].id, _options())
        return await store.find_by_id(stored[0].id)

    segment = asyncio.run(scenario())

    assert len(provider.review_requests) == 3
    assert sleeper.delays == [1.0, 2.0]
    assert segment.status is SegmentStatus.REVIEW_FAILED
    assert "parse" in segment.error


def _fail_for(source_text):
    def respond(request):
        if f"Original text:\n{source_text}\n" in request.user_prompt:
            return failing("backend exploded")(request)
        return review_json(suggestion="ok")

    return respond


def test_batch_review_collects_partial_failures(store, retry):
    provider = ScriptedProvider(review=_fail_for("three"))

    async def scenario():
        _, stored = await seed_file(
            store,
            ["one", "two", "three", "four", "five"],
            status=SegmentStatus.TRANSLATED,
            translated=True,
        )
        processor = _processor(store, provider, retry)
        outcome = await processor.review_batch(
            [s.id for s in stored], _options(batch_size=2, concurrency=2)
        )
        return stored, outcome, [await store.find_by_id(s.id) for s in stored]

    stored, outcome, segments = asyncio.run(scenario())

    assert outcome.details["success_count"] == 4
    assert outcome.details["error_count"] == 1
    assert outcome.details["total_segments"] == 5
    assert len(outcome.details["results"]) == 4
    assert outcome.errors[0]["item"] == stored[2].id
    assert not outcome.is_failure
    statuses = [s.status for s in segments]
    assert statuses == [
        SegmentStatus.REVIEW_COMPLETED,
        SegmentStatus.REVIEW_COMPLETED,
        SegmentStatus.REVIEW_FAILED,
        SegmentStatus.REVIEW_COMPLETED,
        SegmentStatus.REVIEW_COMPLETED,
    ]


def test_batch_review_stop_on_error_skips_the_rest(store, retry):
    provider = ScriptedProvider(review=_fail_for("one"))

    async def scenario():
        _, stored = await seed_file(
            store,
            ["one", "two", "three", "four"],
            status=SegmentStatus.TRANSLATED,
            translated=True,
        )
        outcome = await _processor(store, provider, retry).review_batch(
            [s.id for s in stored],
            _options(batch_size=1, concurrency=1, stop_on_error=True),
        )
        return outcome, [await store.find_by_id(s.id) for s in stored]

    outcome, segments = asyncio.run(scenario())

    assert outcome.aborted
    assert outcome.is_failure
    assert (outcome.succeeded, outcome.failed, outcome.skipped) == (0, 1, 3)
    assert [s.status for s in segments[1:]] == [SegmentStatus.TRANSLATED] * 3


def test_batch_review_respects_concurrency_limit(store, retry):
    in_flight = 0
    peak = 0

    class CountingProvider(ScriptedProvider):
        async def complete(self, request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await super().complete(request)

    provider = CountingProvider()

    async def scenario():
        _, stored = await seed_file(
            store, [f"s{i}" for i in range(8)], status=SegmentStatus.TRANSLATED, translated=True
        )
        return await _processor(store, provider, retry).review_batch(
            [s.id for s in stored], _options(batch_size=8, concurrency=3)
        )

    outcome = asyncio.run(scenario())

    assert outcome.succeeded == 8
    assert peak == 3


def test_review_file_only_new(store, provider, retry):
    async def scenario():
        record, stored = await seed_file(
            store, ["a", "b", "c"], status=SegmentStatus.TRANSLATED, translated=True
        )
        await store.update_status_and_fields(
            stored[0].id, {"status": SegmentStatus.REVIEW_COMPLETED}
        )
        outcome = await _processor(store, provider, retry).review_file(
            record.id, _options(only_new=True)
        )
        return outcome, await store.get_file(record.id)

    outcome, record = asyncio.run(scenario())

    assert outcome.total == 2
    assert outcome.details["reviewed_segments"] == 2
    assert record.status is FileStatus.COMPLETED
    assert len(provider.review_requests) == 2


def test_aborted_review_file_still_marks_the_file_completed(store, retry):
    provider = ScriptedProvider(review=_fail_for("one"))

    async def scenario():
        record, _ = await seed_file(
            store, ["one", "two", "three"], status=SegmentStatus.TRANSLATED, translated=True
        )
        outcome = await _processor(store, provider, retry).review_file(
            record.id, _options(batch_size=1, concurrency=1, stop_on_error=True)
        )
        return outcome, await store.get_file(record.id)

    outcome, record = asyncio.run(scenario())

    assert outcome.aborted
    assert outcome.is_failure
    assert outcome.details["status"] == "completed"
    assert record.status is FileStatus.COMPLETED


def test_review_file_with_nothing_selected_restores_status(store, provider, retry):
    async def scenario():
        record, _ = await seed_file(store, ["a", "b"])
        await store.update_file_status(record.id, FileStatus.TRANSLATED)
        outcome = await _processor(store, provider, retry).review_file(
            record.id, _options()
        )
        return outcome, await store.get_file(record.id)

    outcome, record = asyncio.run(scenario())

    assert (outcome.total, outcome.succeeded, outcome.failed) == (0, 0, 0)
    assert record.status is FileStatus.TRANSLATED
    assert provider.requests == []


def test_review_file_include_statuses(store, provider, retry):
    async def scenario():
        record, stored = await seed_file(
            store, ["a", "b"], status=SegmentStatus.TRANSLATED, translated=True
        )
        await store.update_status_and_fields(
            stored[1].id, {"status": SegmentStatus.REVIEW_FAILED}
        )
        options = ReviewOptions.from_payload({"include_statuses": ["review_failed"]})
        return stored, await _processor(store, provider, retry).review_file(record.id, options)

    stored, outcome = asyncio.run(scenario())

    assert outcome.total == 1
    assert outcome.details["results"][0]["segment_id"] == stored[1].id


def test_review_text_returns_statistics(provider, retry, store):
    provider.review = lambda request: json.dumps(
        {
            "suggestedTranslation": "Buenos días",
            "issues": [{"type": "grammar", "description": "Wrong greeting"}],
            "scores": [{"type": "accuracy", "score": 70}, {"type": "fluency", "score": 81}],
        }
    )

    review = asyncio.run(
        _processor(store, provider, retry).review_text("Good morning", "Buenas días", _options())
    )

    stats = review["statistics"]
    assert stats["original_length"] == len("Good morning")
    assert stats["issue_count"] == 1
    assert stats["overall_score"] == 76
    assert review["suggested_translation"] == "Buenos días"
    assert review["issues"][0]["type"] == "grammar"


def test_review_text_requires_both_texts(store, provider, retry):
    with pytest.raises(ValidationError):
        asyncio.run(_processor(store, provider, retry).review_text("", "x", _options()))


def test_custom_prompt_placeholders(provider, retry, store):
    reviewer = AIReviewer(make_gateway(provider))
    options = _options(
        custom_prompt="{SOURCE_LANGUAGE}>{TARGET_LANGUAGE}: {ORIGINAL_CONTENT} | {TRANSLATED_CONTENT}"
    )

    assert reviewer.build_prompt("cat", "gato", options) == "English>Spanish: cat | gato"


def test_review_options_reject_unknown_status():
    with pytest.raises(ValidationError):
        ReviewOptions.from_payload({"exclude_statuses": ["almost-done"]})
    with pytest.raises(ValidationError):
        ReviewOptions.from_payload({"batch_size": 0})


def test_modification_degree():
    assert modification_degree("abc", "abc") == 0
    assert modification_degree("abcd", "abXd") == pytest.approx(0.25)
    assert modification_degree("ab", "abcd") == pytest.approx(0.5)
    assert modification_degree("", "new") == 0
    assert modification_degree("abc", "xyz-long-text") == 1
