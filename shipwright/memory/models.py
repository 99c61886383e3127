"""Memory record models.

A memory is a durable fact about a repository backed by citations (file,
optional line, optional snippet) that can be re-checked against the live
working tree. Memories expire ``MEMORY_TTL_DAYS`` after their last
successful validation.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from ..core.plan import utcnow

MEMORY_TTL_DAYS = 28


class MemoryStatus(str, Enum):
    """Outcome of the most recent validation."""

    ACTIVE = "active"
    STALE = "stale"
    INVALID = "invalid"


class MemoryCitation(BaseModel):
    """Evidence pointer into the repository, owned by one record."""

    file_path: str
    line_number: Optional[int] = None
    snippet: Optional[str] = None
    last_verified: datetime = Field(default_factory=utcnow)
    is_valid: bool = True

    @field_validator("file_path")
    @classmethod
    def validate_file_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Citation file path cannot be empty")
        return v.strip()

    @classmethod
    def parse(cls, citation: str) -> "MemoryCitation":
        """Parse ``path`` or ``path:line`` into a citation."""
        citation = citation.strip()
        path, sep, line = citation.rpartition(":")
        if sep and path and line.isdigit():
            return cls(file_path=path, line_number=int(line))
        return cls(file_path=citation)

    def __str__(self) -> str:
        if self.line_number is not None:
            return f"{self.file_path}:{self.line_number}"
        return self.file_path


def _coerce_citations(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    return [MemoryCitation.parse(item) if isinstance(item, str) else item for item in value]


class MemoryRecord(BaseModel):
    """A citation-backed fact about one repository."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    repository_id: str
    subject: str
    fact: str
    citations: List[MemoryCitation] = Field(default_factory=list)
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_validated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    use_count: int = Field(default=0, ge=0)
    created_by_workflow_id: Optional[str] = None
    created_by_user_id: Optional[str] = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("subject", "fact")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("citations", mode="before")
    @classmethod
    def parse_citation_strings(cls, v):
        """Accept ``"path:line"`` strings alongside citation objects."""
        return _coerce_citations(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def expires_at(self) -> datetime:
        return (self.last_validated_at or self.created_at) + timedelta(days=MEMORY_TTL_DAYS)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def affects_file(self, file_path: str) -> bool:
        return any(c.file_path == file_path for c in self.citations)

    def recency_key(self) -> datetime:
        """Timestamp used for most-recently-used ordering."""
        return self.last_used_at or self.created_at


class MemoryFilter(BaseModel):
    """Filter options for listing memories."""

    subject_contains: Optional[str] = None
    fact_contains: Optional[str] = None
    affects_file: Optional[str] = None
    include_expired: bool = False
    max_results: Optional[int] = Field(default=20, ge=1)

    def matches(self, record: MemoryRecord, now: datetime) -> bool:
        if not self.include_expired and record.is_expired(now):
            return False
        if self.subject_contains and self.subject_contains.lower() not in record.subject.lower():
            return False
        if self.fact_contains and self.fact_contains.lower() not in record.fact.lower():
            return False
        if self.affects_file and not record.affects_file(self.affects_file):
            return False
        return True


class MemoryUpdate(BaseModel):
    """Partial update of a memory. Unset fields are left untouched."""

    subject: Optional[str] = None
    fact: Optional[str] = None
    citations: Optional[List[MemoryCitation]] = None
    reason: Optional[str] = None
    last_validated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    use_count: Optional[int] = Field(default=None, ge=0)
    status: Optional[MemoryStatus] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("citations", mode="before")
    @classmethod
    def parse_citation_strings(cls, v):
        return _coerce_citations(v)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class MemoryDiscovery(BaseModel):
    """A fact reported by the assistant or a human, not yet stored."""

    subject: str
    fact: str
    citations: List[MemoryCitation] = Field(default_factory=list)
    reason: Optional[str] = None

    @field_validator("citations", mode="before")
    @classmethod
    def parse_citation_strings(cls, v):
        return _coerce_citations(v)


class MemoryStatistics(BaseModel):
    """Aggregate figures for one repository's memories."""

    repository_id: str
    total_memories: int = 0
    active_memories: int = 0
    expired_memories: int = 0
    total_use_count: int = 0
    total_citations: int = 0
    average_use_count: float = 0.0
    most_used_subject: Optional[str] = None
    most_cited_file: Optional[str] = None
