"""AI review of translated segments."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import InvalidStateError, ReviewParseError, ValidationError
from .policy import OutcomeLedger, RetryPolicy
from .providers import CompletionRequest, ProviderGateway
from .store import SegmentStore
from .structures import (
    REVIEWABLE_STATUSES,
    FileStatus,
    Issue,
    IssuePosition,
    IssueSeverity,
    IssueType,
    JobOutcome,
    ReviewMetadata,
    ReviewScore,
    SegmentStatus,
    check_transition,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

ONLY_NEW_EXCLUDED = (
    SegmentStatus.REVIEW_COMPLETED,
    SegmentStatus.REVIEW_FAILED,
    SegmentStatus.COMPLETED,
)

REVIEW_SYSTEM_PROMPT = (
    "You are a professional translation reviewer. Respond only with valid JSON."
)

REVIEW_PROMPT_TEMPLATE = """You are an expert reviewer fluent in {source_language} and {target_language}.
Review the translation below and report problems with concrete suggestions.

Original text:
{original}

Current translation:
{translation}
{context}
Assess accuracy, fluency, terminology, grammar and spelling, and style consistency.
Reply with JSON only, shaped as:
{{
  "suggestedTranslation": "the best translation you can offer",
  "issues": [
    {{
      "type": "accuracy|grammar|terminology|style|consistency|formatting|other",
      "severity": "high|medium|low",
      "description": "what is wrong",
      "position": {{"start": 0, "end": 0}},
      "suggestion": "how to fix it"
    }}
  ],
  "scores": [
    {{"type": "overall", "score": 0, "details": "why"}},
    {{"type": "accuracy", "score": 0, "details": "why"}},
    {{"type": "fluency", "score": 0, "details": "why"}},
    {{"type": "terminology", "score": 0, "details": "why"}},
    {{"type": "style", "score": 0, "details": "why"}}
  ]
}}
Positions are character offsets into the current translation. Scores range from 0 to 100."""


def _parse_statuses(values: Any, field_name: str) -> List[SegmentStatus]:
    if not values:
        return []
    if isinstance(values, (str, SegmentStatus)):
        values = [values]
    statuses: List[SegmentStatus] = []
    for value in values:
        try:
            statuses.append(SegmentStatus(value))
        except ValueError:
            raise ValidationError(
                f"Unknown segment status '{value}' in {field_name}."
            ) from None
    return statuses


def _positive_int(value: Any, default: int, field_name: str) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer.") from None
    if number < 1:
        raise ValidationError(f"{field_name} must be at least 1.")
    return number


@dataclass
class ReviewOptions:
    """Options accepted by every review job."""

    source_language: str = ""
    target_language: str = ""
    model: Optional[str] = None
    provider: Optional[str] = None
    custom_prompt: Optional[str] = None
    context_segments: List[Dict[str, str]] = field(default_factory=list)
    batch_size: int = 10
    concurrency: int = 5
    stop_on_error: bool = False
    only_new: bool = False
    include_statuses: List[SegmentStatus] = field(default_factory=list)
    exclude_statuses: List[SegmentStatus] = field(default_factory=list)

    @classmethod
    def from_payload(
        cls,
        data: Optional[Mapping[str, Any]],
        *,
        batch_size: int = 10,
        concurrency: int = 5,
    ) -> "ReviewOptions":
        data = dict(data or {})
        return cls(
            source_language=str(data.get("source_language") or ""),
            target_language=str(data.get("target_language") or ""),
            model=data.get("model"),
            provider=data.get("provider"),
            custom_prompt=data.get("custom_prompt"),
            context_segments=list(data.get("context_segments") or []),
            batch_size=_positive_int(data.get("batch_size"), batch_size, "batch_size"),
            concurrency=_positive_int(data.get("concurrency"), concurrency, "concurrency"),
            stop_on_error=bool(data.get("stop_on_error", False)),
            only_new=bool(data.get("only_new", False)),
            include_statuses=_parse_statuses(data.get("include_statuses"), "include_statuses"),
            exclude_statuses=_parse_statuses(data.get("exclude_statuses"), "exclude_statuses"),
        )


@dataclass
class ReviewResult:
    suggested_translation: str
    issues: List[Issue]
    scores: List[ReviewScore]
    metadata: ReviewMetadata

    @property
    def overall_score(self) -> float:
        for score in self.scores:
            if score.type == "overall":
                return score.score
        if not self.scores:
            return 0
        return round(sum(score.score for score in self.scores) / len(self.scores))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggested_translation": self.suggested_translation,
            "issues": [
                {
                    "type": issue.type.value,
                    "severity": issue.severity.value,
                    "description": issue.description,
                    "position": (
                        {"start": issue.position.start, "end": issue.position.end}
                        if issue.position
                        else None
                    ),
                    "suggestion": issue.suggestion,
                }
                for issue in self.issues
            ],
            "scores": [
                {"type": score.type, "score": score.score, "details": score.details}
                for score in self.scores
            ],
            "model": self.metadata.model,
            "modification_degree": self.metadata.modification_degree,
            "overall_score": self.overall_score,
        }


def modification_degree(original: str, modified: str) -> float:
    """Share of characters changed between two strings, from 0 to 1."""

    if not original or not modified:
        return 0.0
    longest = max(len(original), len(modified))
    shortest = min(len(original), len(modified))
    changes = longest - shortest
    changes += sum(1 for i in range(shortest) if original[i] != modified[i])
    return min(1.0, changes / longest)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    first_newline = stripped.find("\n")
    if first_newline == -1:
        return stripped
    body = stripped[first_newline + 1 :]
    closing_index = body.rfind("```")
    if closing_index != -1:
        body = body[:closing_index]
    return body.strip()


def _build_issue(raw: Mapping[str, Any], translation: str) -> Optional[Issue]:
    description = str(raw.get("description") or "").strip()
    if not description:
        return None
    try:
        issue_type = IssueType(str(raw.get("type", "other")).lower())
    except ValueError:
        issue_type = IssueType.OTHER
    try:
        severity = IssueSeverity(str(raw.get("severity", "medium")).lower())
    except ValueError:
        severity = IssueSeverity.MEDIUM

    position = None
    raw_position = raw.get("position")
    if isinstance(raw_position, Mapping):
        try:
            candidate = IssuePosition(int(raw_position["start"]), int(raw_position["end"]))
        except (KeyError, TypeError, ValueError):
            candidate = None
        if candidate is not None and candidate.fits(translation):
            position = candidate
        else:
            logger.warning(
                "Dropping out-of-range issue position %r for a translation of %d chars.",
                raw_position,
                len(translation),
            )

    suggestion = raw.get("suggestion")
    return Issue(
        type=issue_type,
        severity=severity,
        description=description,
        position=position,
        suggestion=str(suggestion) if suggestion else None,
    )


class AIReviewer:
    """Builds the review prompt, calls the backend and decodes its JSON answer."""

    def __init__(self, gateway: ProviderGateway) -> None:
        self.gateway = gateway

    def build_prompt(self, original: str, translation: str, options: ReviewOptions) -> str:
        source_language = options.source_language or "the source language"
        target_language = options.target_language or "the target language"
        if options.custom_prompt:
            return (
                options.custom_prompt.replace("{SOURCE_LANGUAGE}", source_language)
                .replace("{TARGET_LANGUAGE}", target_language)
                .replace("{ORIGINAL_CONTENT}", original)
                .replace("{TRANSLATED_CONTENT}", translation)
            )

        context = ""
        if options.context_segments:
            lines = ["", "Surrounding segments:"]
            for number, item in enumerate(options.context_segments, start=1):
                lines.append(
                    f"[{number}] Original: {item.get('original', '')}\n"
                    f"    Translation: {item.get('translation', '')}"
                )
            context = "\n".join(lines) + "\n"

        return REVIEW_PROMPT_TEMPLATE.format(
            source_language=source_language,
            target_language=target_language,
            original=original,
            translation=translation,
            context=context,
        )

    async def review(
        self, original: str, translation: str, options: ReviewOptions
    ) -> ReviewResult:
        request = CompletionRequest(
            system_prompt=REVIEW_SYSTEM_PROMPT,
            user_prompt=self.build_prompt(original, translation, options),
            model=options.model,
            temperature=0.3,
            json_mode=True,
        )
        started = time.monotonic()
        response = await self.gateway.complete(request, provider=options.provider)
        elapsed = time.monotonic() - started

        try:
            payload = json.loads(_strip_code_fence(response.content))
        except json.JSONDecodeError as exc:
            raise ReviewParseError(f"Failed to parse AI review response: {exc}") from exc
        if not isinstance(payload, dict):
            raise ReviewParseError("AI review response is not a JSON object.")

        suggested = str(payload.get("suggestedTranslation") or translation)
        issues = [
            issue
            for issue in (
                _build_issue(raw, translation)
                for raw in payload.get("issues") or []
                if isinstance(raw, Mapping)
            )
            if issue is not None
        ]
        scores: List[ReviewScore] = []
        for raw in payload.get("scores") or []:
            if not isinstance(raw, Mapping):
                continue
            try:
                value = float(raw.get("score", 0))
            except (TypeError, ValueError):
                continue
            scores.append(
                ReviewScore(
                    type=str(raw.get("type", "overall")),
                    score=value,
                    details=raw.get("details"),
                )
            )

        return ReviewResult(
            suggested_translation=suggested,
            issues=issues,
            scores=scores,
            metadata=ReviewMetadata(
                model=response.model,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                processing_time=elapsed,
                modification_degree=modification_degree(translation, suggested),
            ),
        )


class ReviewProcessor:
    """Runs review-segment, review-batch, review-file and review-text jobs."""

    def __init__(
        self,
        store: SegmentStore,
        reviewer: AIReviewer,
        retry: RetryPolicy,
        *,
        batch_size: int = 10,
        concurrency: int = 5,
    ) -> None:
        self.store = store
        self.reviewer = reviewer
        self.retry = retry
        self.batch_size = batch_size
        self.concurrency = concurrency

    def options(self, data: Optional[Mapping[str, Any]]) -> ReviewOptions:
        return ReviewOptions.from_payload(
            data, batch_size=self.batch_size, concurrency=self.concurrency
        )

    async def review_segment(self, segment_id: str, options: ReviewOptions) -> Dict[str, Any]:
        if not segment_id:
            raise ValidationError("A segment id is required for review.")
        segment = await self.store.find_by_id(segment_id)
        if segment.status not in REVIEWABLE_STATUSES:
            raise InvalidStateError(
                f"Invalid segment status for review: {segment.status.value}"
            )
        if not segment.source_text:
            raise ValidationError(f"Segment {segment_id} has no source text.")
        if not segment.translation:
            raise ValidationError(f"Segment {segment_id} has no translation to review.")

        check_transition(segment.status, SegmentStatus.REVIEWING)
        await self.store.update_status_and_fields(
            segment_id, {"status": SegmentStatus.REVIEWING}
        )

        try:
            logger.info(
                "Reviewing segment %s with model %s", segment_id, options.model or "default"
            )
            result = await self.reviewer.review(
                segment.source_text, segment.translation, options
            )
            if result.issues:
                await self.store.append_issues(segment_id, result.issues)
            await self.store.update_status_and_fields(
                segment_id,
                {
                    "status": SegmentStatus.REVIEW_COMPLETED,
                    "review_scores": result.scores,
                    "suggested_translation": result.suggested_translation,
                    "review_metadata": result.metadata,
                    "error": None,
                },
            )
        except Exception as exc:
            await self.store.update_status_and_fields(
                segment_id,
                {"status": SegmentStatus.REVIEW_FAILED, "error": str(exc)},
            )
            logger.error("Error reviewing segment %s: %s", segment_id, exc)
            raise

        return {
            "segment_id": segment_id,
            "status": SegmentStatus.REVIEW_COMPLETED.value,
            "issues_count": len(result.issues),
            "overall_score": result.overall_score,
            "modification_degree": result.metadata.modification_degree,
        }

    async def review_segment_with_retry(
        self, segment_id: str, options: ReviewOptions
    ) -> Dict[str, Any]:
        return await self.retry.run(
            lambda: self.review_segment(segment_id, options),
            label=f"Review of segment {segment_id}",
        )

    async def review_batch(
        self,
        segment_ids: Sequence[str],
        options: ReviewOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        if not segment_ids:
            raise ValidationError("No segment ids provided for batch review.")

        total = len(segment_ids)
        ledger = OutcomeLedger(total)
        results: List[Dict[str, Any]] = []
        semaphore = asyncio.Semaphore(options.concurrency)
        abort = asyncio.Event()
        processed = 0

        logger.info(
            "Starting batch review of %d segments (batch size %d, concurrency %d)",
            total,
            options.batch_size,
            options.concurrency,
        )

        async def run_one(segment_id: str) -> Optional[Dict[str, Any]]:
            nonlocal processed
            async with semaphore:
                if abort.is_set():
                    ledger.record_skip()
                    return None
                try:
                    result = await self.review_segment_with_retry(segment_id, options)
                except Exception as exc:
                    ledger.record_failure(segment_id, exc)
                    if options.stop_on_error:
                        abort.set()
                    return None
                finally:
                    processed += 1
                    if progress:
                        progress(processed, total)
                ledger.record_success()
                return result

        for start in range(0, total, options.batch_size):
            if abort.is_set():
                ledger.record_skip(total - start)
                break
            chunk = segment_ids[start : start + options.batch_size]
            logger.debug(
                "Reviewing chunk %d/%d",
                start // options.batch_size + 1,
                -(-total // options.batch_size),
            )
            chunk_results = await asyncio.gather(*(run_one(sid) for sid in chunk))
            results.extend(result for result in chunk_results if result is not None)

        if abort.is_set():
            logger.error("Stopped batch review after an error: %s", ledger.first_error)
        logger.info(
            "Batch review finished: %d succeeded, %d failed", ledger.succeeded, ledger.failed
        )
        outcome = ledger.outcome(
            total_segments=total,
            success_count=ledger.succeeded,
            error_count=ledger.failed,
            results=results,
        )
        outcome.aborted = abort.is_set()
        return outcome

    async def review_file(
        self,
        file_id: str,
        options: ReviewOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        if not file_id:
            raise ValidationError("A file id is required for file review.")
        record = await self.store.get_file(file_id)
        previous_status = record.status
        await self.store.update_file_status(file_id, FileStatus.REVIEWING)

        try:
            if options.include_statuses:
                selected = await self.store.find_by_file(
                    file_id,
                    include_statuses=options.include_statuses,
                    require_translation=True,
                )
            elif options.exclude_statuses:
                selected = await self.store.find_by_file(
                    file_id,
                    exclude_statuses=options.exclude_statuses,
                    require_translation=True,
                )
            elif options.only_new:
                selected = await self.store.find_by_file(
                    file_id,
                    exclude_statuses=ONLY_NEW_EXCLUDED,
                    require_translation=True,
                )
            else:
                selected = await self.store.find_by_file(file_id, require_translation=True)

            if not selected:
                logger.warning("No segments to review in file %s", file_id)
                await self.store.update_file_status(file_id, previous_status)
                return JobOutcome(details={"file_id": file_id, "message": "No segments to review"})

            logger.info("Found %d segments to review in file %s", len(selected), file_id)
            outcome = await self.review_batch(
                [segment.id for segment in selected], options, progress
            )
        except Exception as exc:
            await self.store.update_file_status(file_id, FileStatus.ERROR)
            logger.error("Error reviewing file %s: %s", file_id, exc)
            raise

        await self.store.update_file_status(file_id, FileStatus.COMPLETED)
        outcome.details.update(
            file_id=file_id,
            file_name=record.name,
            reviewed_segments=outcome.succeeded,
            failed_segments=outcome.failed,
            status=FileStatus.COMPLETED.value,
        )
        return outcome

    async def review_text(
        self, original_text: str, translated_text: str, options: ReviewOptions
    ) -> Dict[str, Any]:
        if not original_text or not isinstance(original_text, str):
            raise ValidationError("Original text is required.")
        if not translated_text or not isinstance(translated_text, str):
            raise ValidationError("Translated text is required.")

        result = await self.retry.run(
            lambda: self.reviewer.review(original_text, translated_text, options),
            label="Text review",
        )
        review = result.to_dict()
        review["statistics"] = {
            "original_length": len(original_text),
            "translated_length": len(translated_text),
            "suggested_length": len(result.suggested_translation),
            "issue_count": len(result.issues),
            "overall_score": result.overall_score,
            "modification_degree": result.metadata.modification_degree,
        }
        return review


def ensure_segment_ids(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError("segment_ids must be a non-empty list.")
    ids = [str(value) for value in values if value]
    if len(ids) != len(values):
        raise ValidationError("segment_ids contains empty identifiers.")
    return ids

