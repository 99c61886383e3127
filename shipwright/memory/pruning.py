"""Periodic removal of expired memories."""

from typing import Optional

from ..core.recurring_job import RecurringJob
from .service import MemoryService


class MemoryPruneJob(RecurringJob):
    """Prune expired memories of every repository on an interval."""

    def __init__(
        self,
        service: MemoryService,
        interval_seconds: Optional[float] = None,
    ):
        self.service = service
        self.total_pruned = 0
        super().__init__(
            name="memory-prune",
            action=self.prune,
            interval_seconds=interval_seconds or service.config.prune_interval_seconds(),
        )

    def prune(self) -> int:
        removed = self.service.prune()
        self.total_pruned += removed
        return removed
