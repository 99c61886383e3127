"""Citation-backed memory of repository facts."""

from .models import (
    MEMORY_TTL_DAYS,
    MemoryCitation,
    MemoryDiscovery,
    MemoryFilter,
    MemoryRecord,
    MemoryStatistics,
    MemoryStatus,
    MemoryUpdate,
)
from .pruning import MemoryPruneJob
from .service import MemoryService, repository_identity
from .store import InMemoryBackend, JsonFileBackend, MemoryBackend, MemoryStore
from .validator import (
    CitationCheck,
    CitationIssue,
    MemoryValidator,
    RecommendedAction,
    RepositoryValidationReport,
    ValidationResult,
    recommend_action,
)

__all__ = [
    "MEMORY_TTL_DAYS",
    "CitationCheck",
    "CitationIssue",
    "InMemoryBackend",
    "JsonFileBackend",
    "MemoryBackend",
    "MemoryCitation",
    "MemoryDiscovery",
    "MemoryFilter",
    "MemoryPruneJob",
    "MemoryRecord",
    "MemoryService",
    "MemoryStatistics",
    "MemoryStatus",
    "MemoryStore",
    "MemoryUpdate",
    "MemoryValidator",
    "RecommendedAction",
    "RepositoryValidationReport",
    "ValidationResult",
    "recommend_action",
    "repository_identity",
]
