"""Concurrency-safe registry of workflows and their plans."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from ..core.exceptions import (
    RepositoryBusyError,
    StatePersistenceError,
    WorkflowNotFoundError,
)
from ..core.locks import KeyedLock
from ..core.plan import ImplementationPlan
from ..core.state_persistence import PlanStorage, WorkflowStatePersistence
from ..core.workflow_state import Workflow, WorkflowStatus
from ..memory.service import repository_identity

logger = logging.getLogger(__name__)

# Statuses after which a workflow no longer owns its working tree
RELEASING_STATUSES = (WorkflowStatus.COMPLETE, WorkflowStatus.ABORTED)


class WorkflowRegistry:
    """
    Live workflows keyed by id, with one active workflow per repository.

    Mutations of one workflow serialize on that workflow's lock (``lock``);
    readers get deep copies. Every save is written through to the state
    directory when persistence is configured.
    """

    def __init__(
        self,
        persistence: Optional[WorkflowStatePersistence] = None,
        plan_storage: Optional[PlanStorage] = None,
    ):
        self.persistence = persistence
        self.plan_storage = plan_storage
        self._workflows: Dict[str, Workflow] = {}
        self._plans: Dict[str, ImplementationPlan] = {}
        self._repositories: Dict[str, str] = {}
        self._locks = KeyedLock()
        self._guard = threading.Lock()

    def register(self, workflow: Workflow) -> None:
        """Add a new workflow and reserve its repository.

        Raises:
            RepositoryBusyError: If another live workflow owns the repository
        """
        repo = repository_identity(workflow.repository_path)
        with self._guard:
            owner = self._repositories.get(repo)
            if owner is not None and owner != workflow.id:
                raise RepositoryBusyError(
                    f"Repository {repo} already has an active workflow: {owner}"
                )
            self._repositories[repo] = workflow.id
            self._workflows[workflow.id] = workflow
        self.save(workflow)

    def release_repository(self, workflow: Workflow) -> None:
        repo = repository_identity(workflow.repository_path)
        with self._guard:
            if self._repositories.get(repo) == workflow.id:
                del self._repositories[repo]

    def repository_owner(self, repository_path: str) -> Optional[str]:
        with self._guard:
            return self._repositories.get(repository_identity(repository_path))

    @contextmanager
    def lock(self, workflow_id: str) -> Iterator[None]:
        """Serialize mutations of one workflow."""
        with self._locks.hold(workflow_id):
            yield

    def live(self, workflow_id: str) -> Workflow:
        """The mutable workflow object; use only while holding its lock.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        with self._guard:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def get(self, workflow_id: str) -> Workflow:
        """A snapshot of the workflow.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        with self.lock(workflow_id):
            return self.live(workflow_id).model_copy(deep=True)

    def save(self, workflow: Workflow) -> None:
        workflow.touch()
        if workflow.status in RELEASING_STATUSES:
            self.release_repository(workflow)
        if self.persistence is not None:
            self.persistence.save_workflow(workflow)

    def set_plan(self, workflow_id: str, plan: ImplementationPlan) -> None:
        with self._guard:
            self._plans[workflow_id] = plan
        self.save_plan(workflow_id)

    def save_plan(self, workflow_id: str) -> None:
        plan = self.live_plan(workflow_id)
        if plan is not None and self.plan_storage is not None:
            self.plan_storage.save_plan(workflow_id, plan)

    def live_plan(self, workflow_id: str) -> Optional[ImplementationPlan]:
        with self._guard:
            return self._plans.get(workflow_id)

    def get_plan(self, workflow_id: str) -> Optional[ImplementationPlan]:
        """A snapshot of the workflow's plan, or None before planning.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        with self.lock(workflow_id):
            self.live(workflow_id)
            plan = self.live_plan(workflow_id)
            return plan.model_copy(deep=True) if plan is not None else None

    def list_all(self) -> List[Workflow]:
        with self._guard:
            ids = list(self._workflows)
        return [self.get(workflow_id) for workflow_id in ids]

    def list_active(self) -> List[Workflow]:
        return [w for w in self.list_all() if not w.is_terminal()]

    def remove(self, workflow_id: str, delete_documents: bool = False) -> bool:
        """Forget a workflow, optionally deleting its persisted documents."""
        with self._guard:
            workflow = self._workflows.pop(workflow_id, None)
            self._plans.pop(workflow_id, None)
        if workflow is None:
            return False
        self.release_repository(workflow)
        self._locks.discard(workflow_id)
        if delete_documents:
            if self.persistence is not None:
                self.persistence.delete(workflow_id)
            if self.plan_storage is not None:
                self.plan_storage.delete(workflow_id)
        return True

    def load_persisted(self) -> int:
        """Load persisted workflows and plans that are not yet in memory.

        Non-terminal workflows reserve their repository again so they can be
        resumed with ``retry``.

        Returns:
            Number of workflows loaded
        """
        if self.persistence is None:
            return 0

        loaded = 0
        for workflow_id, workflow in self.persistence.load_all().items():
            with self._guard:
                if workflow.id in self._workflows:
                    continue
                repo = repository_identity(workflow.repository_path)
                if not workflow.is_terminal():
                    if repo in self._repositories:
                        logger.warning(
                            "Not loading workflow %s: repository %s is owned by %s",
                            workflow.id,
                            repo,
                            self._repositories[repo],
                        )
                        continue
                    self._repositories[repo] = workflow.id
                self._workflows[workflow.id] = workflow
                if self.plan_storage is not None:
                    try:
                        plan = self.plan_storage.load_plan(workflow_id)
                    except StatePersistenceError as e:
                        logger.warning("Plan of workflow %s is unreadable: %s", workflow.id, e)
                        plan = None
                    if plan is not None:
                        self._plans[workflow.id] = plan
            loaded += 1
        return loaded
