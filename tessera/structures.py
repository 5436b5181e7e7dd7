"""Core data structures for the Tessera translation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from .errors import InvalidStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SegmentStatus(str, Enum):
    """Lifecycle states of a segment."""

    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    TRANSLATION_FAILED = "translation_failed"
    REVIEWING = "reviewing"
    REVIEW_COMPLETED = "review_completed"
    REVIEW_FAILED = "review_failed"
    COMPLETED = "completed"


# COMPLETED has no outgoing pipeline transitions; only an external edit can reopen it.
SEGMENT_TRANSITIONS: Mapping[SegmentStatus, FrozenSet[SegmentStatus]] = {
    SegmentStatus.PENDING: frozenset({SegmentStatus.TRANSLATING}),
    SegmentStatus.TRANSLATING: frozenset(
        {SegmentStatus.TRANSLATED, SegmentStatus.TRANSLATION_FAILED}
    ),
    SegmentStatus.TRANSLATION_FAILED: frozenset({SegmentStatus.PENDING}),
    SegmentStatus.TRANSLATED: frozenset({SegmentStatus.REVIEWING}),
    SegmentStatus.REVIEWING: frozenset(
        {SegmentStatus.REVIEW_COMPLETED, SegmentStatus.REVIEW_FAILED}
    ),
    SegmentStatus.REVIEW_FAILED: frozenset(
        {SegmentStatus.TRANSLATED, SegmentStatus.REVIEWING}
    ),
    SegmentStatus.REVIEW_COMPLETED: frozenset({SegmentStatus.COMPLETED}),
    SegmentStatus.COMPLETED: frozenset(),
}

REVIEWABLE_STATUSES = frozenset({SegmentStatus.TRANSLATED, SegmentStatus.REVIEW_FAILED})
RETRANSLATABLE_STATUSES = frozenset(
    {SegmentStatus.PENDING, SegmentStatus.TRANSLATION_FAILED}
)


def can_transition(current: SegmentStatus, target: SegmentStatus) -> bool:
    return target in SEGMENT_TRANSITIONS.get(current, frozenset())


def check_transition(current: SegmentStatus, target: SegmentStatus) -> None:
    """Raise ``InvalidStateError`` unless ``current -> target`` is allowed."""

    if not can_transition(current, target):
        raise InvalidStateError(
            f"Segment status cannot move from '{current.value}' to '{target.value}'."
        )


class IssueType(str, Enum):
    TERMINOLOGY = "terminology"
    GRAMMAR = "grammar"
    STYLE = "style"
    ACCURACY = "accuracy"
    FORMATTING = "formatting"
    CONSISTENCY = "consistency"
    OTHER = "other"


class IssueSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class IssuePosition:
    """Character offsets into a translation."""

    start: int
    end: int

    def fits(self, text: str) -> bool:
        return 0 <= self.start <= self.end <= len(text)


@dataclass
class Issue:
    """A defect found in a segment's translation."""

    type: IssueType
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    position: Optional[IssuePosition] = None
    suggestion: Optional[str] = None
    resolved: bool = False


@dataclass
class ReviewScore:
    type: str
    score: float
    details: Optional[str] = None


@dataclass
class TranslationMetadata:
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time: float = 0.0


@dataclass
class ReviewMetadata:
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time: float = 0.0
    modification_degree: float = 0.0


@dataclass
class Segment:
    """The unit of translation, addressed by its ordinal ``index`` within a file."""

    index: int
    source_text: str
    id: str = ""
    file_id: str = ""
    translation: Optional[str] = None
    final_translation: Optional[str] = None
    status: SegmentStatus = SegmentStatus.PENDING
    issues: List[Issue] = field(default_factory=list)
    translation_metadata: Optional[TranslationMetadata] = None
    review_metadata: Optional[ReviewMetadata] = None
    review_scores: List[ReviewScore] = field(default_factory=list)
    suggested_translation: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def output_text(self) -> str:
        """The text to export: a human-finalized value wins over the AI translation."""

        if self.final_translation:
            return self.final_translation
        return self.translation or ""


class FileStatus(str, Enum):
    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class FileRecord:
    """A document whose segments live in the store."""

    id: str
    name: str
    project_id: Optional[str] = None
    status: FileStatus = FileStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Batch:
    """A batch of segments constrained by a token budget."""

    batch_id: int
    segments: List[Segment]
    token_count: int = 0
    prompt: str = ""

    @property
    def indices(self) -> List[int]:
        return [segment.index for segment in self.segments]


@dataclass
class SkippedSegment:
    segment: Segment
    tokens: int
    reason: str


@dataclass
class BatchPlan:
    """Result of packing segments: the batches plus anything that could not fit."""

    batches: List[Batch] = field(default_factory=list)
    skipped: List[SkippedSegment] = field(default_factory=list)


class TaskType(str, Enum):
    TRANSLATE_FILE = "translate-file"
    TRANSLATE_PROJECT = "translate-project"
    REVIEW_SEGMENT = "review-segment"
    REVIEW_BATCH = "review-batch"
    REVIEW_FILE = "review-file"
    REVIEW_TEXT = "review-text"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


@dataclass
class Progress:
    processed: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed * 100 / self.total)


@dataclass
class JobOutcome:
    """Partial-success report returned by every job."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    first_error: Optional[str] = None
    errors: List[Dict[str, str]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    aborted: bool = False

    @property
    def all_failed(self) -> bool:
        return self.failed > 0 and self.succeeded == 0

    @property
    def is_failure(self) -> bool:
        """A job fails only when every unit failed or it stopped on an error."""

        return self.aborted or self.all_failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "first_error": self.first_error,
            "errors": list(self.errors),
            "aborted": self.aborted,
            **self.details,
        }


@dataclass
class Task:
    """A unit of queued work."""

    id: str
    type: TaskType
    payload: Dict[str, Any]
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    progress: Progress = field(default_factory=Progress)
    outcome: Optional[JobOutcome] = None
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class TaskReport:
    """What a caller sees when polling a task."""

    task_id: str
    type: TaskType
    status: TaskStatus
    progress: Progress
    succeeded: int
    failed: int
    total: int
    first_error: Optional[str]
    retry_count: int
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.task_id,
            "type": self.type.value,
            "status": self.status.value,
            "progress": {
                "processed": self.progress.processed,
                "total": self.progress.total,
                "percent": self.progress.percent,
            },
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total": self.total,
            "first_error": self.first_error,
            "retry_count": self.retry_count,
            "result": self.result,
            "error": self.error,
        }
