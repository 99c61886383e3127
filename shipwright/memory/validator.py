"""Re-check memory citations against the live working tree.

Validation is read-only and deterministic for a fixed file-system state:

- ``missing``: the cited file does not exist
- ``out_of_range``: the cited line is past the end of the file (or below 1)
- ``stale``: the stored snippet no longer appears in the cited line, or
  anywhere in the file when the citation has no line number

``confidence = valid / total`` and a record without citations scores 0.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.file_system import FileSystem
from ..core.plan import utcnow
from .models import MemoryCitation, MemoryRecord, MemoryStatus

logger = logging.getLogger(__name__)

REFRESH_THRESHOLD = 0.8
KEEP_THRESHOLD = 0.5


class CitationIssue(str, Enum):
    """Why a citation failed validation."""

    MISSING = "missing"
    OUT_OF_RANGE = "out_of_range"
    STALE = "stale"


class RecommendedAction(str, Enum):
    """What to do with a memory after validation."""

    REFRESH = "refresh"
    UPDATE_CITATIONS = "update_citations"
    REVIEW_MANUALLY = "review_manually"
    DELETE = "delete"


def recommend_action(confidence: float) -> RecommendedAction:
    """Map a confidence score onto an action bucket."""
    if confidence >= REFRESH_THRESHOLD:
        return RecommendedAction.REFRESH
    if confidence >= KEEP_THRESHOLD:
        return RecommendedAction.UPDATE_CITATIONS
    if confidence > 0:
        return RecommendedAction.REVIEW_MANUALLY
    return RecommendedAction.DELETE


class CitationCheck(BaseModel):
    """Validation outcome for one citation."""

    citation: str
    is_valid: bool
    issue: Optional[CitationIssue] = None
    detail: Optional[str] = None


class ValidationResult(BaseModel):
    """Validation outcome for one memory record."""

    memory_id: str
    checks: List[CitationCheck] = Field(default_factory=list)
    confidence: float = 0.0
    action: RecommendedAction = RecommendedAction.DELETE
    validated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_valid(self) -> bool:
        """A record is valid with at least one citation and passing confidence."""
        return bool(self.checks) and self.confidence >= KEEP_THRESHOLD

    @property
    def valid_count(self) -> int:
        return sum(1 for c in self.checks if c.is_valid)


class RepositoryValidationReport(BaseModel):
    """Aggregate of validating every memory of a repository."""

    repository_id: str
    total: int = 0
    refreshed: int = 0
    updated: int = 0
    flagged_for_review: int = 0
    deleted: int = 0
    results: List[ValidationResult] = Field(default_factory=list)

    def count(self, action: RecommendedAction) -> int:
        return sum(1 for r in self.results if r.action == action)


class MemoryValidator:
    """
    Scores memory records by re-checking their citations.

    Citation checks of one record, and records of one batch, are read-only
    and run concurrently on a thread pool. Problems with citations only
    lower the score; they never raise.
    """

    def __init__(
        self,
        file_system: FileSystem,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 8,
    ):
        """
        Initialize the validator.

        Args:
            file_system: View of the repository the citations point into
            clock: Source of "now" for validation timestamps
            max_workers: Thread pool size for concurrent checks
        """
        self.file_system = file_system
        self.clock = clock
        self.max_workers = max_workers

    def check_citation(self, citation: MemoryCitation) -> CitationCheck:
        """Validate a single citation against the file system."""
        label = str(citation)

        try:
            if not self.file_system.exists(citation.file_path):
                return CitationCheck(
                    citation=label,
                    is_valid=False,
                    issue=CitationIssue.MISSING,
                    detail=f"File not found: {citation.file_path}",
                )
            lines = self.file_system.read_lines(citation.file_path)
        except OSError as e:
            return CitationCheck(
                citation=label, is_valid=False, issue=CitationIssue.MISSING, detail=str(e)
            )

        if citation.line_number is not None:
            if citation.line_number < 1 or citation.line_number > len(lines):
                return CitationCheck(
                    citation=label,
                    is_valid=False,
                    issue=CitationIssue.OUT_OF_RANGE,
                    detail=f"Line {citation.line_number} outside 1..{len(lines)}",
                )
            haystack = lines[citation.line_number - 1]
        else:
            haystack = "\n".join(lines)

        if citation.snippet and citation.snippet.strip() not in haystack:
            return CitationCheck(
                citation=label,
                is_valid=False,
                issue=CitationIssue.STALE,
                detail="Snippet no longer present",
            )

        return CitationCheck(citation=label, is_valid=True)

    def _score(self, record: MemoryRecord, checks: List[CitationCheck]) -> ValidationResult:
        total = len(checks)
        confidence = (sum(1 for c in checks if c.is_valid) / total) if total else 0.0
        return ValidationResult(
            memory_id=record.id,
            checks=checks,
            confidence=confidence,
            action=recommend_action(confidence),
            validated_at=self.clock(),
        )

    def validate(self, record: MemoryRecord) -> ValidationResult:
        """Validate one record. Never raises for citation problems."""
        if len(record.citations) <= 1:
            checks = [self.check_citation(c) for c in record.citations]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                checks = list(pool.map(self.check_citation, record.citations))
        return self._score(record, checks)

    def validate_many(self, records: List[MemoryRecord]) -> List[ValidationResult]:
        """Validate a batch of records concurrently, preserving order."""
        if not records:
            return []

        def check_all(record: MemoryRecord) -> ValidationResult:
            return self._score(record, [self.check_citation(c) for c in record.citations])

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(check_all, records))

    def apply(self, record: MemoryRecord, result: ValidationResult) -> MemoryRecord:
        """
        Write a validation result onto a record in place.

        Citation flags and confidence always change. A ``refresh`` result
        also moves ``last_validated_at`` forward, never backward, so the
        record's expiry is only ever extended.
        """
        for citation, check in zip(record.citations, result.checks):
            citation.is_valid = check.is_valid
            if check.is_valid:
                citation.last_verified = result.validated_at

        record.confidence = result.confidence
        if result.action == RecommendedAction.REFRESH:
            record.status = MemoryStatus.ACTIVE
            previous = record.last_validated_at
            if previous is None or result.validated_at > previous:
                record.last_validated_at = result.validated_at
        elif result.action == RecommendedAction.DELETE:
            record.status = MemoryStatus.INVALID
        else:
            record.status = MemoryStatus.STALE

        return record

    @staticmethod
    def summarize(repository_id: str, results: List[ValidationResult]) -> RepositoryValidationReport:
        report = RepositoryValidationReport(
            repository_id=repository_id, total=len(results), results=results
        )
        report.refreshed = report.count(RecommendedAction.REFRESH)
        report.updated = report.count(RecommendedAction.UPDATE_CITATIONS)
        report.flagged_for_review = report.count(RecommendedAction.REVIEW_MANUALLY)
        report.deleted = report.count(RecommendedAction.DELETE)
        return report


def results_by_action(results: List[ValidationResult]) -> Dict[RecommendedAction, List[str]]:
    """Group memory ids by recommended action."""
    grouped: Dict[RecommendedAction, List[str]] = {action: [] for action in RecommendedAction}
    for result in results:
        grouped[result.action].append(result.memory_id)
    return grouped
