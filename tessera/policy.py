"""Retry and error-accounting policy."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import ErrorCategory, ErrorRecord, TransientError, categorise
from .structures import JobOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Bounded retry loop with exponential backoff.

    Only ``TransientError`` is retried. Anything else, validation errors in
    particular, propagates on the first attempt without consuming a retry.
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_unit: float = 1.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_unit = max(0.0, backoff_unit)
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the zero-based ``attempt`` failed."""

        return self.backoff_unit * (2 ** attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientError as exc:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempts: %s", label, attempt + 1, exc
                    )
                    raise
                wait_time = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d of %d): %s. Retrying in %.1fs.",
                    label,
                    attempt + 1,
                    self.max_attempts,
                    exc,
                    wait_time,
                )
                attempt += 1
                if wait_time:
                    await self._sleep(wait_time)


class OutcomeLedger:
    """Counts successes and failures for one job and remembers the first error."""

    def __init__(self, total: int = 0) -> None:
        self.total = total
        self.succeeded = 0
        self.skipped = 0
        self.records: List[ErrorRecord] = []

    @property
    def failed(self) -> int:
        return len(self.records)

    @property
    def first_error(self) -> Optional[str]:
        return self.records[0].message if self.records else None

    def record_success(self, count: int = 1) -> None:
        self.succeeded += count

    def record_skip(self, count: int = 1) -> None:
        self.skipped += count

    def record_failure(
        self,
        item: str,
        error: BaseException | str,
        category: ErrorCategory | None = None,
    ) -> ErrorRecord:
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
            category = category or categorise(error)
        else:
            message = error
            category = category or ErrorCategory.OTHER
        record = ErrorRecord(category=category, message=message, item=item)
        self.records.append(record)
        return record

    def outcome(self, **details) -> JobOutcome:
        return JobOutcome(
            total=self.total,
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            first_error=self.first_error,
            errors=[
                {"item": record.item or "", "error": record.message}
                for record in self.records
            ],
            details=details,
        )
