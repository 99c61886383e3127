"""Durable storage for memory records.

``MemoryStore`` owns record semantics (filtering, ordering, expiry, partial
updates) and serializes writes per record id. Where records live is decided
by a ``MemoryBackend``: ``InMemoryBackend`` for tests and throwaway runs,
``JsonFileBackend`` for one JSON document per repository on disk.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..core.exceptions import MemoryNotFoundError, StatePersistenceError
from ..core.locks import KeyedLock
from ..core.plan import utcnow
from ..core.state_persistence import read_json, write_json_atomic
from .models import MemoryFilter, MemoryRecord, MemoryStatistics, MemoryUpdate

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class MemoryBackend(ABC):
    """Swappable backing store for memory records."""

    @abstractmethod
    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        """Return a record by id, or None."""

    @abstractmethod
    def put(self, record: MemoryRecord) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def remove(self, memory_id: str) -> bool:
        """Remove a record; return False if it did not exist."""

    @abstractmethod
    def list_repository(self, repository_id: str) -> List[MemoryRecord]:
        """All records of one repository."""

    @abstractmethod
    def repositories(self) -> List[str]:
        """Repository ids that have at least one record."""


class InMemoryBackend(MemoryBackend):
    """Dictionary-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: Dict[str, MemoryRecord] = {}
        self._lock = threading.Lock()

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        with self._lock:
            record = self._records.get(memory_id)
            return record.model_copy(deep=True) if record else None

    def put(self, record: MemoryRecord) -> None:
        with self._lock:
            self._records[record.id] = record.model_copy(deep=True)

    def remove(self, memory_id: str) -> bool:
        with self._lock:
            return self._records.pop(memory_id, None) is not None

    def list_repository(self, repository_id: str) -> List[MemoryRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.repository_id == repository_id
            ]

    def repositories(self) -> List[str]:
        with self._lock:
            return sorted({r.repository_id for r in self._records.values()})


class JsonFileBackend(MemoryBackend):
    """
    One JSON document per repository under ``directory``.

    All documents are loaded on construction; every write rewrites the
    affected repository's document atomically. Writers to the same
    repository document serialize on a per-repository lock.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self._records: Dict[str, Dict[str, MemoryRecord]] = {}
        self._index: Dict[str, str] = {}
        self._guard = threading.Lock()
        self._repo_locks = KeyedLock()

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatePersistenceError(
                f"Failed to create memory directory {self.directory}: {e}"
            ) from e
        self._load_all()

    @staticmethod
    def document_name(repository_id: str) -> str:
        """Stable, filesystem-safe document name for a repository id."""
        digest = hashlib.sha1(repository_id.encode("utf-8")).hexdigest()[:12]
        base = Path(repository_id.rstrip("/\\")).name or "repository"
        safe_base = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in base)
        return f"{safe_base}-{digest}.json"

    def _load_all(self) -> None:
        for path in sorted(self.directory.glob("*.json")):
            try:
                document = read_json(path)
                records = [MemoryRecord.model_validate(m) for m in document.get("memories", [])]
            except (StatePersistenceError, ValueError) as e:
                logger.warning("Skipping unreadable memory document %s: %s", path, e)
                continue

            for record in records:
                self._records.setdefault(record.repository_id, {})[record.id] = record
                self._index[record.id] = record.repository_id

    def _write(self, repository_id: str) -> None:
        with self._guard:
            records = [r.model_dump(mode="json") for r in self._records.get(repository_id, {}).values()]
        path = self.directory / self.document_name(repository_id)
        write_json_atomic(path, {"repository_id": repository_id, "memories": records})

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        with self._guard:
            repository_id = self._index.get(memory_id)
            if repository_id is None:
                return None
            return self._records[repository_id][memory_id].model_copy(deep=True)

    def put(self, record: MemoryRecord) -> None:
        with self._repo_locks.hold(record.repository_id):
            with self._guard:
                previous_repo = self._index.get(record.id)
                if previous_repo is not None and previous_repo != record.repository_id:
                    self._records[previous_repo].pop(record.id, None)
                self._records.setdefault(record.repository_id, {})[record.id] = record.model_copy(deep=True)
                self._index[record.id] = record.repository_id
            self._write(record.repository_id)

    def remove(self, memory_id: str) -> bool:
        with self._guard:
            repository_id = self._index.get(memory_id)
        if repository_id is None:
            return False

        with self._repo_locks.hold(repository_id):
            with self._guard:
                self._index.pop(memory_id, None)
                removed = self._records.get(repository_id, {}).pop(memory_id, None)
            self._write(repository_id)
        return removed is not None

    def list_repository(self, repository_id: str) -> List[MemoryRecord]:
        with self._guard:
            return [r.model_copy(deep=True) for r in self._records.get(repository_id, {}).values()]

    def repositories(self) -> List[str]:
        with self._guard:
            return sorted(repo for repo, records in self._records.items() if records)


class MemoryStore:
    """
    Keyed storage for memory records scoped to a repository identity.

    Writes to the same record are serialized by a per-id lock; records of
    different ids and repositories are written concurrently. Records handed
    out are copies, so callers change stored state only through the store.
    """

    def __init__(self, backend: Optional[MemoryBackend] = None, clock: Clock = utcnow):
        self.backend = backend or InMemoryBackend()
        self.clock = clock
        self._locks = KeyedLock()

    def store(self, record: MemoryRecord) -> MemoryRecord:
        """Persist a record, replacing any record with the same id."""
        with self._locks.hold(record.id):
            self.backend.put(record)
        return record.model_copy(deep=True)

    def get(self, memory_id: str) -> MemoryRecord:
        """
        Get a record by id.

        Raises:
            MemoryNotFoundError: If no record has this id
        """
        record = self.backend.get(memory_id)
        if record is None:
            raise MemoryNotFoundError(f"Memory not found: {memory_id}")
        return record

    def list(
        self, repository_id: str, filter: Optional[MemoryFilter] = None
    ) -> List[MemoryRecord]:
        """
        List a repository's records, most recently used first.

        Records never used sort by their creation time.
        """
        filter = filter or MemoryFilter()
        now = self.clock()
        records = [
            r for r in self.backend.list_repository(repository_id) if filter.matches(r, now)
        ]
        records.sort(key=lambda r: r.recency_key(), reverse=True)
        if filter.max_results is not None:
            records = records[: filter.max_results]
        return records

    def modify(self, memory_id: str, mutate: Callable[[MemoryRecord], None]) -> MemoryRecord:
        """
        Read-modify-write a record under its lock.

        Raises:
            MemoryNotFoundError: If no record has this id
        """
        with self._locks.hold(memory_id):
            record = self.get(memory_id)
            mutate(record)
            # Re-validate so mutations cannot persist an invalid record
            record = MemoryRecord.model_validate(record.model_dump())
            self.backend.put(record)
            return record

    def update(self, memory_id: str, changes: Union[MemoryUpdate, Dict]) -> MemoryRecord:
        """
        Apply a partial update.

        Raises:
            MemoryNotFoundError: If no record has this id
        """
        if not isinstance(changes, MemoryUpdate):
            changes = MemoryUpdate.model_validate(changes)
        values = changes.changes()

        with self._locks.hold(memory_id):
            current = self.get(memory_id)
            merged = {**current.model_dump(), **values}
            record = MemoryRecord.model_validate(merged)
            self.backend.put(record)
            return record

    def delete(self, memory_id: str) -> None:
        """
        Delete a record.

        Raises:
            MemoryNotFoundError: If no record has this id
        """
        with self._locks.hold(memory_id):
            if not self.backend.remove(memory_id):
                raise MemoryNotFoundError(f"Memory not found: {memory_id}")
        self._locks.discard(memory_id)

    def prune_expired(self, repository_id: Optional[str] = None) -> int:
        """
        Remove records past their expiry.

        Args:
            repository_id: Limit pruning to one repository (default: all)

        Returns:
            Number of records removed
        """
        repositories = [repository_id] if repository_id else self.backend.repositories()
        removed = 0

        for repo in repositories:
            for candidate in self.backend.list_repository(repo):
                with self._locks.hold(candidate.id):
                    # Re-read under the lock; a refresh may have extended it
                    current = self.backend.get(candidate.id)
                    if current is None or not current.is_expired(self.clock()):
                        continue
                    if not self.backend.remove(candidate.id):
                        continue
                    removed += 1
                self._locks.discard(candidate.id)

        if removed:
            logger.info("Pruned %d expired memories", removed)
        return removed

    def search(self, repository_id: str, query: str, limit: int = 10) -> List[MemoryRecord]:
        """Unexpired records whose subject or fact contains ``query``."""
        needle = query.strip().lower()
        now = self.clock()
        matches = [
            r
            for r in self.backend.list_repository(repository_id)
            if not r.is_expired(now)
            and (needle in r.subject.lower() or needle in r.fact.lower())
        ]
        matches.sort(key=lambda r: r.recency_key(), reverse=True)
        return matches[:limit]

    def find_by_citation(self, repository_id: str, file_path: str) -> List[MemoryRecord]:
        """Unexpired records citing ``file_path``."""
        return self.list(
            repository_id,
            MemoryFilter(affects_file=file_path, max_results=None),
        )

    def mark_used(self, memory_ids: Iterable[str]) -> None:
        """Bump use counters of records that were fed into a prompt."""
        now = self.clock()

        def bump(record: MemoryRecord) -> None:
            record.use_count += 1
            record.last_used_at = now

        for memory_id in memory_ids:
            try:
                self.modify(memory_id, bump)
            except MemoryNotFoundError:
                # Deleted between listing and use
                logger.debug("Memory %s vanished before use was recorded", memory_id)

    def repositories(self) -> List[str]:
        return self.backend.repositories()

    def statistics(self, repository_id: str) -> MemoryStatistics:
        records = self.backend.list_repository(repository_id)
        now = self.clock()
        stats = MemoryStatistics(repository_id=repository_id)
        if not records:
            return stats

        expired = sum(1 for r in records if r.is_expired(now))
        cited_files = Counter(c.file_path for r in records for c in r.citations)
        most_used = max(records, key=lambda r: r.use_count)

        stats.total_memories = len(records)
        stats.expired_memories = expired
        stats.active_memories = len(records) - expired
        stats.total_use_count = sum(r.use_count for r in records)
        stats.total_citations = sum(len(r.citations) for r in records)
        stats.average_use_count = stats.total_use_count / len(records)
        stats.most_used_subject = most_used.subject if most_used.use_count else None
        stats.most_cited_file = cited_files.most_common(1)[0][0] if cited_files else None
        return stats
