"""Translate jobs: token-bounded batches of a file's pending segments."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .batching import BatchBuilder, PromptContext, build_system_prompt, parse_batch_response
from .errors import ErrorCategory, ValidationError
from .policy import OutcomeLedger, RetryPolicy
from .providers import CompletionRequest, ProviderGateway
from .store import SegmentStore
from .structures import (
    Batch,
    FileRecord,
    FileStatus,
    JobOutcome,
    Segment,
    SegmentStatus,
    TranslationMetadata,
    check_transition,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class TranslationOptions:
    """Options accepted by translate-file and translate-project jobs."""

    source_language: Optional[str] = None
    target_language: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    domain: Optional[str] = None
    terminology: Dict[str, str] = field(default_factory=dict)
    temperature: float = 0.3
    max_output_tokens: Optional[int] = None
    review_after_translation: bool = False

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> "TranslationOptions":
        data = dict(data or {})
        terminology = data.get("terminology") or {}
        if not isinstance(terminology, Mapping):
            raise ValidationError("terminology must be a mapping of source to target terms.")
        try:
            temperature = float(data.get("temperature", 0.3))
        except (TypeError, ValueError):
            raise ValidationError("temperature must be a number.") from None
        max_output_tokens = data.get("max_output_tokens")
        if max_output_tokens is not None:
            try:
                max_output_tokens = int(max_output_tokens)
            except (TypeError, ValueError):
                raise ValidationError("max_output_tokens must be an integer.") from None
        return cls(
            source_language=data.get("source_language"),
            target_language=data.get("target_language"),
            model=data.get("model"),
            provider=data.get("provider"),
            domain=data.get("domain"),
            terminology={str(k): str(v) for k, v in terminology.items()},
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            review_after_translation=bool(data.get("review_after_translation", False)),
        )

    def languages_for(self, record: FileRecord) -> tuple:
        source = self.source_language or record.metadata.get("source_language")
        target = self.target_language or record.metadata.get("target_language")
        if not source:
            raise ValidationError(f"No source language known for file {record.id}.")
        if not target:
            raise ValidationError(f"No target language known for file {record.id}.")
        return source, target


class FileTranslator:
    """Runs the translate-file and translate-project jobs against the store."""

    def __init__(
        self,
        store: SegmentStore,
        gateway: ProviderGateway,
        builder: BatchBuilder,
        retry: RetryPolicy,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.builder = builder
        self.retry = retry

    async def translate_file(
        self,
        file_id: str,
        options: TranslationOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        if not file_id:
            raise ValidationError("A file id is required for translation.")
        record = await self.store.get_file(file_id)
        languages = options.languages_for(record)
        segments = await self._eligible_segments(file_id)

        ledger = OutcomeLedger(len(segments))
        translated_ids: List[str] = []
        if not segments:
            logger.info("No pending segments in file %s", file_id)
            return ledger.outcome(file_id=file_id, translated_segment_ids=translated_ids)

        tracker = _ProgressTracker(len(segments), progress)
        await self._translate_segments(
            record, segments, languages, options, ledger, translated_ids, tracker
        )
        return ledger.outcome(
            file_id=file_id,
            batches=tracker.batches,
            translated_segment_ids=translated_ids,
        )

    async def translate_project(
        self,
        project_id: str,
        options: TranslationOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        if not project_id:
            raise ValidationError("A project id is required for translation.")
        files = await self.store.list_files(project_id)
        if not files:
            raise ValidationError(f"Project {project_id} has no files to translate.")

        work = []
        for record in files:
            languages = options.languages_for(record)
            work.append((record, languages, await self._eligible_segments(record.id)))

        total = sum(len(segments) for _, _, segments in work)
        ledger = OutcomeLedger(total)
        translated_ids: List[str] = []
        tracker = _ProgressTracker(total, progress)
        per_file: Dict[str, Dict[str, int]] = {}

        for record, languages, segments in work:
            if not segments:
                logger.info("No pending segments in file %s", record.id)
                continue
            before_ok, before_failed = ledger.succeeded, ledger.failed
            await self._translate_segments(
                record, segments, languages, options, ledger, translated_ids, tracker
            )
            per_file[record.id] = {
                "succeeded": ledger.succeeded - before_ok,
                "failed": ledger.failed - before_failed,
            }

        return ledger.outcome(
            project_id=project_id,
            files=per_file,
            batches=tracker.batches,
            translated_segment_ids=translated_ids,
        )

    async def _eligible_segments(self, file_id: str) -> List[Segment]:
        segments = await self.store.find_pending_by_file(file_id)
        for segment in segments:
            if segment.status is SegmentStatus.TRANSLATION_FAILED:
                await self._move(segment, SegmentStatus.PENDING)
        return segments

    async def _translate_segments(
        self,
        record: FileRecord,
        segments: Sequence[Segment],
        languages: tuple,
        options: TranslationOptions,
        ledger: OutcomeLedger,
        translated_ids: List[str],
        tracker: "_ProgressTracker",
    ) -> None:
        source_language, target_language = languages
        system_prompt = build_system_prompt(source_language, target_language)
        context = PromptContext(
            source_language=source_language,
            target_language=target_language,
            domain=options.domain,
            terminology=options.terminology,
        )
        plan = self.builder.build(segments, system_prompt=system_prompt, context=context)
        logger.info(
            "Translating file %s: %d segments in %d batches (%d over budget)",
            record.id,
            len(segments),
            len(plan.batches),
            len(plan.skipped),
        )
        await self.store.update_file_status(record.id, FileStatus.TRANSLATING)
        failed_before = ledger.failed
        succeeded_before = ledger.succeeded

        for skipped in plan.skipped:
            await self._move(skipped.segment, SegmentStatus.TRANSLATING)
            await self._move(
                skipped.segment, SegmentStatus.TRANSLATION_FAILED, error=skipped.reason
            )
            ledger.record_failure(skipped.segment.id, skipped.reason, ErrorCategory.BUDGET)
        if plan.skipped:
            tracker.advance(len(plan.skipped))

        for batch in plan.batches:
            await self._process_batch(
                batch, system_prompt, options, ledger, translated_ids
            )
            tracker.batches += 1
            tracker.advance(len(batch.segments))

        attempted_ok = ledger.succeeded - succeeded_before
        attempted_failed = ledger.failed - failed_before
        final_status = (
            FileStatus.ERROR
            if attempted_failed and not attempted_ok
            else FileStatus.TRANSLATED
        )
        await self.store.update_file_status(record.id, final_status)
        logger.info(
            "File %s: %d translated, %d failed",
            record.id,
            attempted_ok,
            attempted_failed,
        )

    async def _process_batch(
        self,
        batch: Batch,
        system_prompt: str,
        options: TranslationOptions,
        ledger: OutcomeLedger,
        translated_ids: List[str],
    ) -> None:
        for segment in batch.segments:
            await self._move(segment, SegmentStatus.TRANSLATING)

        request = CompletionRequest(
            system_prompt=system_prompt,
            user_prompt=batch.prompt,
            model=options.model,
            temperature=options.temperature,
            max_tokens=options.max_output_tokens,
        )
        started = time.monotonic()
        try:
            response = await self.retry.run(
                lambda: self.gateway.complete(request, provider=options.provider),
                label=f"Batch {batch.batch_id} ({len(batch.segments)} segments)",
            )
        except Exception as exc:
            logger.error("Batch %d failed: %s", batch.batch_id, exc)
            for segment in batch.segments:
                await self._move(segment, SegmentStatus.TRANSLATION_FAILED, error=str(exc))
                ledger.record_failure(segment.id, exc)
            return
        elapsed = time.monotonic() - started

        translations = parse_batch_response(response.content)
        count = len(batch.segments)
        metadata = TranslationMetadata(
            model=response.model,
            prompt_tokens=response.usage.prompt_tokens // count,
            completion_tokens=response.usage.completion_tokens // count,
            processing_time=elapsed / count,
        )
        for segment in batch.segments:
            text = (translations.get(segment.index) or "").rstrip()
            if not text:
                message = f"No translation returned for segment {segment.index}."
                logger.warning(message)
                await self._move(segment, SegmentStatus.TRANSLATION_FAILED, error=message)
                ledger.record_failure(segment.id, message, ErrorCategory.TRANSLATION)
                continue
            await self._move(
                segment,
                SegmentStatus.TRANSLATED,
                translation=text + _trailing_whitespace(segment.source_text),
                translation_metadata=metadata,
                error=None,
            )
            ledger.record_success()
            translated_ids.append(segment.id)

    async def _move(self, segment: Segment, target: SegmentStatus, **fields: Any) -> None:
        check_transition(segment.status, target)
        await self.store.update_status_and_fields(segment.id, {"status": target, **fields})
        segment.status = target


class _ProgressTracker:
    def __init__(self, total: int, callback: Optional[ProgressCallback]) -> None:
        self.total = total
        self.processed = 0
        self.batches = 0
        self._callback = callback

    def advance(self, count: int) -> None:
        self.processed = min(self.total, self.processed + count)
        if self._callback:
            self._callback(self.processed, self.total)


def _trailing_whitespace(text: str) -> str:
    return text[len(text.rstrip()):]
