"""Memory control surface.

``MemoryService`` combines the store and the validator into the operations
exposed to transports and to the orchestrator: CRUD, validate, refresh,
prune, search, statistics, recording discoveries, and formatting verified
memories as prompt context.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from ..config.models import MemoryConfig
from ..core.exceptions import MemoryNotFoundError
from ..core.file_system import FileSystem, LocalFileSystem
from ..core.plan import utcnow
from .models import (
    MemoryCitation,
    MemoryDiscovery,
    MemoryFilter,
    MemoryRecord,
    MemoryStatistics,
    MemoryUpdate,
)
from .store import MemoryStore
from .validator import (
    MemoryValidator,
    RecommendedAction,
    RepositoryValidationReport,
    ValidationResult,
)

logger = logging.getLogger(__name__)


def repository_identity(repository_path: Union[str, Path]) -> str:
    """Canonical repository id: the resolved absolute path."""
    return str(Path(repository_path).expanduser().resolve())


class MemoryService:
    """Operations on memories addressed by memory id and repository identity."""

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        config: Optional[MemoryConfig] = None,
        file_system_for: Optional[Callable[[str], FileSystem]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the service.

        Args:
            store: Memory store (default: in-memory)
            config: Memory configuration
            file_system_for: Maps a repository id to the file system its
                citations point into (default: the directory itself)
            clock: Source of "now"
        """
        self.store = store or MemoryStore(clock=clock)
        self.config = config or MemoryConfig()
        self.file_system_for = file_system_for or LocalFileSystem
        self.clock = clock

    def validator_for(self, repository_id: str) -> MemoryValidator:
        return MemoryValidator(
            self.file_system_for(repository_id),
            clock=self.clock,
            max_workers=self.config.validation_workers,
        )

    # CRUD

    def create(
        self,
        repository_id: str,
        subject: str,
        fact: str,
        citations: Iterable[Union[str, MemoryCitation]] = (),
        reason: Optional[str] = None,
        created_by_workflow_id: Optional[str] = None,
        created_by_user_id: Optional[str] = None,
    ) -> MemoryRecord:
        record = MemoryRecord(
            repository_id=repository_id,
            subject=subject,
            fact=fact,
            citations=list(citations),
            reason=reason,
            created_at=self.clock(),
            created_by_workflow_id=created_by_workflow_id,
            created_by_user_id=created_by_user_id,
        )
        return self.store.store(record)

    def get(self, memory_id: str) -> MemoryRecord:
        return self.store.get(memory_id)

    def list(self, repository_id: str, filter: Optional[MemoryFilter] = None) -> List[MemoryRecord]:
        return self.store.list(repository_id, filter)

    def update(self, memory_id: str, changes: Union[MemoryUpdate, dict]) -> MemoryRecord:
        return self.store.update(memory_id, changes)

    def delete(self, memory_id: str) -> None:
        self.store.delete(memory_id)

    def search(self, repository_id: str, query: str, limit: int = 10) -> List[MemoryRecord]:
        return self.store.search(repository_id, query, limit)

    def find_by_citation(self, repository_id: str, file_path: str) -> List[MemoryRecord]:
        return self.store.find_by_citation(repository_id, file_path)

    def statistics(self, repository_id: str) -> MemoryStatistics:
        return self.store.statistics(repository_id)

    # Validation and expiry

    def validate(self, memory_id: str) -> ValidationResult:
        """
        Validate one memory and write the outcome back to the store.

        Raises:
            MemoryNotFoundError: If the memory does not exist
        """
        record = self.store.get(memory_id)
        validator = self.validator_for(record.repository_id)
        result = validator.validate(record)
        self.store.modify(memory_id, lambda r: validator.apply(r, result))
        return result

    def validate_repository(
        self, repository_id: str, delete_invalid: bool = False
    ) -> RepositoryValidationReport:
        """
        Validate every memory of a repository, expired ones included.

        Refresh-bucket records get their expiry extended; the others are
        flagged through their status. Records in the delete bucket are only
        removed when ``delete_invalid`` is set.
        """
        records = self.store.list(
            repository_id, MemoryFilter(include_expired=True, max_results=None)
        )
        validator = self.validator_for(repository_id)
        results = validator.validate_many(records)

        for result in results:
            try:
                if delete_invalid and result.action == RecommendedAction.DELETE:
                    self.store.delete(result.memory_id)
                else:
                    self.store.modify(
                        result.memory_id, lambda r, res=result: validator.apply(r, res)
                    )
            except MemoryNotFoundError:
                # Deleted while the batch was being checked
                logger.debug("Memory %s vanished during validation", result.memory_id)

        report = validator.summarize(repository_id, results)
        logger.info(
            "Validated %d memories for %s: %d refreshed, %d updated, %d review, %d delete",
            report.total,
            repository_id,
            report.refreshed,
            report.updated,
            report.flagged_for_review,
            report.deleted,
        )
        return report

    def refresh(self, memory_id: str) -> MemoryRecord:
        """
        Vouch for a memory without re-checking it.

        ``last_validated_at`` only moves forward, so refreshing never
        shortens the expiry.

        Raises:
            MemoryNotFoundError: If the memory does not exist
        """
        now = self.clock()

        def extend(record: MemoryRecord) -> None:
            if record.last_validated_at is None or now > record.last_validated_at:
                record.last_validated_at = now

        return self.store.modify(memory_id, extend)

    def prune(self, repository_id: Optional[str] = None) -> int:
        return self.store.prune_expired(repository_id)

    # Orchestrator integration

    def verified_memories(
        self, repository_id: str, query: Optional[str] = None
    ) -> List[MemoryRecord]:
        """
        Memories fit to be placed in a prompt.

        With ``verify_before_use`` each candidate is validated first and
        kept only when its confidence reaches ``minimum_confidence``.
        """
        limit = self.config.max_memories_per_prompt
        if query:
            candidates = self.store.search(repository_id, query, limit=limit * 2)
            if not candidates:
                candidates = self.store.list(repository_id, MemoryFilter(max_results=limit * 2))
        else:
            candidates = self.store.list(repository_id, MemoryFilter(max_results=limit * 2))

        if not self.config.verify_before_use:
            return candidates[:limit]

        validator = self.validator_for(repository_id)
        verified = []
        for record, result in zip(candidates, validator.validate_many(candidates)):
            updated = self.store.modify(record.id, lambda r, res=result: validator.apply(r, res))
            if result.is_valid and result.confidence >= self.config.minimum_confidence:
                verified.append(updated)
            if len(verified) >= limit:
                break
        return verified

    def format_context(self, repository_id: str, query: Optional[str] = None) -> str:
        """
        Render verified memories as prompt context and record their use.

        Returns:
            Markdown text, empty when there is nothing to share
        """
        if not self.config.enabled:
            return ""

        memories = self.verified_memories(repository_id, query)
        if not memories:
            return ""

        lines = []
        for memory in memories:
            lines.append(f"### {memory.subject}")
            lines.append(memory.fact)
            if memory.citations:
                lines.append("Sources: " + ", ".join(str(c) for c in memory.citations))
            lines.append("")

        self.store.mark_used(m.id for m in memories)
        return "\n".join(lines).rstrip() + "\n"

    def record_discoveries(
        self,
        repository_id: str,
        discoveries: Iterable[MemoryDiscovery],
        workflow_id: Optional[str] = None,
    ) -> List[MemoryRecord]:
        """
        Store facts reported during execution.

        Discoveries without citations are dropped since they could never
        validate.
        """
        if not self.config.auto_store_discoveries:
            return []

        stored = []
        for discovery in discoveries:
            if not discovery.citations:
                logger.warning("Skipping memory without citations: %s", discovery.subject)
                continue
            stored.append(
                self.create(
                    repository_id,
                    subject=discovery.subject,
                    fact=discovery.fact,
                    citations=discovery.citations,
                    reason=discovery.reason,
                    created_by_workflow_id=workflow_id,
                )
            )
        return stored
