"""High-level orchestration for translating a whole document."""

from __future__ import annotations

import logging
import pathlib
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .documents import detect_format, detect_handler
from .engine import TaskQueue
from .errors import OverwriteRefusedError, TesseraError
from .providers import ProviderRegistry
from .store import InMemorySegmentStore
from .structures import FileRecord, SegmentStatus, TaskReport, TaskStatus, TaskType

if TYPE_CHECKING:
    from .configuration import TesseraConfig

logger = logging.getLogger(__name__)


@dataclass
class PipelineSummary:
    """Report returned after processing a document."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    document_type: str
    total_segments: int
    translated_segments: int
    failed_segments: int
    already_done: int
    reviewed_segments: int
    total_batches: int
    provider_name: str
    model: Optional[str]
    target_language: str
    source_language: Optional[str]
    elapsed_seconds: float
    error_messages: List[str] = field(default_factory=list)

    @property
    def total_errors(self) -> int:
        return len(self.error_messages)


class DocumentPipeline:
    """Extract, translate, optionally review, and reinject one document."""

    def __init__(
        self,
        *,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        target_language: str,
        source_language: Optional[str],
        settings: TesseraConfig,
        format_hint: Optional[str] = None,
        review: bool = False,
        providers: Optional[ProviderRegistry] = None,
        **queue_options: Any,
    ) -> None:
        self.input_path = input_path
        self.output_path = output_path
        self.target_language = target_language
        self.source_language = source_language
        self.settings = settings
        self.format_hint = format_hint
        self.review = review
        self.providers = providers
        self.queue_options = queue_options

    async def run(self) -> PipelineSummary:
        start_time = time.monotonic()
        data = self.input_path.read_bytes()
        document_type = self.format_hint or detect_format(self.input_path, data)
        handler = detect_handler(document_type)
        extraction = handler.extract(data)

        source_language = self.source_language or extraction.metadata.get("source_language")
        if not source_language:
            raise TesseraError(
                "No source language given and none found in the document. Use -s/--source-language."
            )

        store = InMemorySegmentStore()
        record = await store.add_file(
            FileRecord(
                id="",
                name=self.input_path.name,
                metadata={
                    **extraction.metadata,
                    "source_language": source_language,
                    "target_language": self.target_language,
                },
            )
        )
        await store.add_segments(record.id, extraction.segments)
        already_done = sum(
            1 for segment in extraction.segments if segment.status is not SegmentStatus.PENDING
        )

        errors: List[str] = []
        translation: Optional[TaskReport] = None
        review: Optional[TaskReport] = None
        queue = TaskQueue.from_settings(
            store, self.settings, providers=self.providers, **self.queue_options
        )
        async with queue:
            task_id = queue.submit(TaskType.TRANSLATE_FILE, {"file_id": record.id})
            translation = await queue.wait(task_id)
            errors.extend(_report_errors(translation))
            if self.review:
                review_id = queue.submit(
                    TaskType.REVIEW_FILE,
                    {
                        "file_id": record.id,
                        "options": {
                            "source_language": source_language,
                            "target_language": self.target_language,
                            "only_new": True,
                        },
                    },
                )
                review = await queue.wait(review_id)
                errors.extend(_report_errors(review))

        segments = await store.find_by_file(record.id)
        self.output_path.write_bytes(handler.inject(segments, data))
        logger.info("Wrote %s", self.output_path)

        result: Dict[str, Any] = translation.result or {}
        return PipelineSummary(
            input_path=self.input_path,
            output_path=self.output_path,
            document_type=document_type,
            total_segments=len(segments),
            translated_segments=translation.succeeded,
            failed_segments=translation.failed,
            already_done=already_done,
            reviewed_segments=review.succeeded if review else 0,
            total_batches=int(result.get("batches", 0)),
            provider_name=self.settings.LLM_PROVIDER,
            model=self.settings.TESSERA_MODEL,
            target_language=self.target_language,
            source_language=source_language,
            elapsed_seconds=time.monotonic() - start_time,
            error_messages=errors,
        )


def _report_errors(report: TaskReport) -> List[str]:
    messages = [
        f"{entry.get('item')}: {entry.get('error')}"
        for entry in (report.result or {}).get("errors", [])
    ]
    if report.status is TaskStatus.FAILED and not messages and report.error:
        messages.append(report.error)
    return messages


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")
    if not input_path.is_file():
        raise TesseraError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or pass --force."
        )
