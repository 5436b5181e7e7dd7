"""Segment Store boundary and an in-memory implementation."""

from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import NotFoundError, ValidationError
from .structures import (
    RETRANSLATABLE_STATUSES,
    FileRecord,
    FileStatus,
    Issue,
    Segment,
    SegmentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class SegmentStore(ABC):
    """Durable record of segments and their files.

    Every mutation is scoped to a single id. Updates are last-write-wins per
    field, so a retried update is harmless.
    """

    @abstractmethod
    async def find_pending_by_file(self, file_id: str) -> List[Segment]:
        """Segments eligible for translation, in ascending index order."""

    @abstractmethod
    async def find_by_id(self, segment_id: str) -> Segment:
        """Return a segment or raise ``NotFoundError``."""

    @abstractmethod
    async def find_by_file(
        self,
        file_id: str,
        *,
        include_statuses: Optional[Iterable[SegmentStatus]] = None,
        exclude_statuses: Optional[Iterable[SegmentStatus]] = None,
        require_translation: bool = False,
    ) -> List[Segment]:
        """Filtered segments of one file, in ascending index order."""

    @abstractmethod
    async def update_status_and_fields(
        self, segment_id: str, fields: Mapping[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def append_issues(self, segment_id: str, issues: Sequence[Issue]) -> None:
        ...

    @abstractmethod
    async def resolve_issue(self, segment_id: str, issue_number: int) -> None:
        ...

    @abstractmethod
    async def add_file(self, record: FileRecord) -> FileRecord:
        ...

    @abstractmethod
    async def get_file(self, file_id: str) -> FileRecord:
        ...

    @abstractmethod
    async def list_files(self, project_id: str) -> List[FileRecord]:
        ...

    @abstractmethod
    async def update_file_status(self, file_id: str, status: FileStatus) -> None:
        ...

    @abstractmethod
    async def add_segments(
        self, file_id: str, segments: Sequence[Segment]
    ) -> List[Segment]:
        """Store ``segments`` for the file, rejecting the whole batch on a duplicate index."""


SEGMENT_FIELDS = frozenset(
    {
        "translation",
        "final_translation",
        "status",
        "translation_metadata",
        "review_metadata",
        "review_scores",
        "suggested_translation",
        "error",
        "metadata",
    }
)


class InMemorySegmentStore(SegmentStore):
    """Process-local store. Reads hand out copies so callers cannot mutate state."""

    def __init__(self) -> None:
        self._segments: Dict[str, Segment] = {}
        self._files: Dict[str, FileRecord] = {}
        self._by_file: Dict[str, List[str]] = {}

    def _segment(self, segment_id: str) -> Segment:
        try:
            return self._segments[segment_id]
        except KeyError:
            raise NotFoundError(f"Segment not found: {segment_id}") from None

    def _file(self, file_id: str) -> FileRecord:
        try:
            return self._files[file_id]
        except KeyError:
            raise NotFoundError(f"File not found: {file_id}") from None

    def _ordered(self, file_id: str) -> List[Segment]:
        self._file(file_id)
        segments = [self._segments[sid] for sid in self._by_file.get(file_id, [])]
        return sorted(segments, key=lambda segment: segment.index)

    async def find_pending_by_file(self, file_id: str) -> List[Segment]:
        return [
            copy.deepcopy(segment)
            for segment in self._ordered(file_id)
            if segment.status in RETRANSLATABLE_STATUSES
        ]

    async def find_by_id(self, segment_id: str) -> Segment:
        return copy.deepcopy(self._segment(segment_id))

    async def find_by_file(
        self,
        file_id: str,
        *,
        include_statuses: Optional[Iterable[SegmentStatus]] = None,
        exclude_statuses: Optional[Iterable[SegmentStatus]] = None,
        require_translation: bool = False,
    ) -> List[Segment]:
        include = set(include_statuses) if include_statuses else None
        exclude = set(exclude_statuses) if exclude_statuses else set()
        selected: List[Segment] = []
        for segment in self._ordered(file_id):
            if include is not None and segment.status not in include:
                continue
            if segment.status in exclude:
                continue
            if require_translation and not segment.translation:
                continue
            selected.append(copy.deepcopy(segment))
        return selected

    async def update_status_and_fields(
        self, segment_id: str, fields: Mapping[str, Any]
    ) -> None:
        unknown = set(fields) - SEGMENT_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update unknown segment fields: {', '.join(sorted(unknown))}"
            )
        segment = self._segment(segment_id)
        for name, value in fields.items():
            setattr(segment, name, copy.deepcopy(value))
        segment.updated_at = utcnow()

    async def append_issues(self, segment_id: str, issues: Sequence[Issue]) -> None:
        segment = self._segment(segment_id)
        segment.issues.extend(copy.deepcopy(list(issues)))
        segment.updated_at = utcnow()

    async def resolve_issue(self, segment_id: str, issue_number: int) -> None:
        segment = self._segment(segment_id)
        if not 0 <= issue_number < len(segment.issues):
            raise NotFoundError(
                f"Segment {segment_id} has no issue number {issue_number}."
            )
        segment.issues[issue_number].resolved = True
        segment.updated_at = utcnow()

    async def add_file(self, record: FileRecord) -> FileRecord:
        if not record.id:
            record = _with_id(record)
        self._files[record.id] = copy.deepcopy(record)
        self._by_file.setdefault(record.id, [])
        return copy.deepcopy(record)

    async def get_file(self, file_id: str) -> FileRecord:
        return copy.deepcopy(self._file(file_id))

    async def list_files(self, project_id: str) -> List[FileRecord]:
        return [
            copy.deepcopy(record)
            for record in self._files.values()
            if record.project_id == project_id
        ]

    async def update_file_status(self, file_id: str, status: FileStatus) -> None:
        self._file(file_id).status = status

    async def add_segments(
        self, file_id: str, segments: Sequence[Segment]
    ) -> List[Segment]:
        self._file(file_id)
        existing = {self._segments[sid].index for sid in self._by_file[file_id]}
        for segment in segments:
            if segment.index in existing:
                raise ValidationError(
                    f"File {file_id} already has a segment with index {segment.index}."
                )
            existing.add(segment.index)

        stored: List[Segment] = []
        for segment in segments:
            record = copy.deepcopy(segment)
            record.id = record.id or uuid.uuid4().hex
            record.file_id = file_id
            self._segments[record.id] = record
            self._by_file[file_id].append(record.id)
            stored.append(copy.deepcopy(record))
        logger.debug("Stored %d segments for file %s", len(stored), file_id)
        return stored


def _with_id(record: FileRecord) -> FileRecord:
    clone = copy.deepcopy(record)
    clone.id = uuid.uuid4().hex
    return clone
