"""Persistence of plan and workflow status documents.

Documents are JSON files under the state directory, one per workflow, so
they stay easy to inspect and diff:

    <state_dir>/plans/<workflow_id>.json
    <state_dir>/workflows/<workflow_id>.json
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .exceptions import StatePersistenceError
from .plan import ImplementationPlan
from .workflow_state import Workflow

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def safe_filename(key: str) -> str:
    """Sanitize an id for use as a filename."""
    return key.replace("/", "_").replace("\\", "_").replace(":", "_")


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to ``path`` atomically.

    Raises:
        StatePersistenceError: If the write fails
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

        # Rename to final location (atomic on POSIX systems)
        temp_file.replace(path)
    except OSError as e:
        raise StatePersistenceError(f"Failed to write {path}: {e}") from e


def read_json(path: Path) -> Any:
    """
    Read a JSON document.

    Raises:
        StatePersistenceError: If the file cannot be read or decoded
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StatePersistenceError(f"Failed to read {path}: {e}") from e


class JsonDocumentStore(Generic[ModelT]):
    """One JSON document per key for a pydantic model type."""

    def __init__(self, directory: Path, model: Type[ModelT]):
        self.directory = Path(directory)
        self.model = model
        self._lock = threading.Lock()

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatePersistenceError(
                f"Failed to create state directory {self.directory}: {e}"
            ) from e

    def path_for(self, key: str) -> Path:
        return self.directory / f"{safe_filename(key)}.json"

    def save(self, key: str, document: ModelT) -> Path:
        path = self.path_for(key)
        with self._lock:
            write_json_atomic(path, document.model_dump(mode="json"))
        return path

    def load(self, key: str) -> Optional[ModelT]:
        """
        Load a document.

        Returns:
            The document, or None if it does not exist

        Raises:
            StatePersistenceError: If the document is corrupted
        """
        path = self.path_for(key)
        with self._lock:
            if not path.exists():
                return None
            data = read_json(path)

        try:
            return self.model.model_validate(data)
        except ValidationError as e:
            raise StatePersistenceError(f"Invalid document {path}: {e}") from e

    def load_all(self) -> Dict[str, ModelT]:
        """Load every readable document, skipping corrupted ones."""
        documents: Dict[str, ModelT] = {}
        for key in self.list_keys():
            try:
                document = self.load(key)
            except StatePersistenceError as e:
                logger.warning("Skipping unreadable state document: %s", e)
                continue
            if document is not None:
                documents[key] = document
        return documents

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        with self._lock:
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise StatePersistenceError(f"Failed to delete {path}: {e}") from e
            return True

    def list_keys(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class PlanStorage(JsonDocumentStore[ImplementationPlan]):
    """Plan documents keyed by workflow id."""

    def __init__(self, state_dir: Path):
        super().__init__(Path(state_dir) / "plans", ImplementationPlan)

    def save_plan(self, workflow_id: str, plan: ImplementationPlan) -> Path:
        plan.touch()
        return self.save(workflow_id, plan)

    def load_plan(self, workflow_id: str) -> Optional[ImplementationPlan]:
        return self.load(workflow_id)


class WorkflowStatePersistence(JsonDocumentStore[Workflow]):
    """Workflow status documents keyed by workflow id."""

    def __init__(self, state_dir: Path):
        super().__init__(Path(state_dir) / "workflows", Workflow)

    def save_workflow(self, workflow: Workflow) -> Path:
        return self.save(workflow.id, workflow)

    def load_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self.load(workflow_id)
