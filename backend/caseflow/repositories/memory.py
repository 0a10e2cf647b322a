"""In-memory implementation of the Datastore"""
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from ..domain.models import WorkflowInstance, HistoryEntry, PendingTask
from ..domain.enums import InstanceStatus, TaskStatus
from ..domain.errors import (
    PersistenceError, VersionConflictError, InstanceNotFoundError, TaskNotFoundError
)
from .base import Datastore
from ..utils.time import ensure_utc, is_overdue
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryDatastore(Datastore):
    """
    Store engine state in local memory

    Useful for tests or when a module embeds the engine without a
    database. Data is not persisted across process restarts. A
    re-entrant lock serializes writers; a transaction holds the lock for
    its whole duration and restores a snapshot if it fails.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, PendingTask] = {}
        self._history: List[HistoryEntry] = []

    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self, timeout: Optional[float]) -> Iterator[None]:
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise PersistenceError(
                "Timed out waiting for datastore lock",
                details={"timeout": timeout}
            )
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator["InMemoryDatastore"]:
        with self._locked(timeout):
            # Stored models are replaced, never mutated, so shallow copies suffice
            instances = dict(self._instances)
            tasks = dict(self._tasks)
            history_len = len(self._history)
            try:
                yield self
            except BaseException:
                self._instances = instances
                self._tasks = tasks
                del self._history[history_len:]
                logger.debug("In-memory transaction rolled back")
                raise

    # ------------------------------------------------------------------
    def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> WorkflowInstance:
        with self._locked(timeout):
            stored = self._instances.get(instance.instance_id)
            if expected_version is None:
                if stored is not None:
                    raise PersistenceError(
                        f"Instance {instance.instance_id} already exists",
                        details={"instance_id": instance.instance_id}
                    )
            else:
                if stored is None:
                    raise InstanceNotFoundError(f"Instance {instance.instance_id} not found")
                if stored.version != expected_version:
                    raise VersionConflictError(
                        f"Instance {instance.instance_id} was modified",
                        details={
                            "expected_version": expected_version,
                            "actual_version": stored.version
                        }
                    )
            self._instances[instance.instance_id] = instance.model_copy(deep=True)
            return instance

    def load_instance(
        self,
        instance_id: str,
        timeout: Optional[float] = None
    ) -> Optional[WorkflowInstance]:
        with self._locked(timeout):
            stored = self._instances.get(instance_id)
            return stored.model_copy(deep=True) if stored else None

    def list_instances(
        self,
        definition_name: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        timeout: Optional[float] = None
    ) -> List[WorkflowInstance]:
        with self._locked(timeout):
            return [
                i.model_copy(deep=True) for i in self._instances.values()
                if (definition_name is None or i.definition_name == definition_name)
                and (status is None or i.status == status)
            ]

    # ------------------------------------------------------------------
    def append_history(self, entry: HistoryEntry, timeout: Optional[float] = None) -> HistoryEntry:
        with self._locked(timeout):
            self._history.append(entry)
            return entry

    def get_history(self, instance_id: str, timeout: Optional[float] = None) -> List[HistoryEntry]:
        return self.query_history(instance_id=instance_id, timeout=timeout)

    def query_history(
        self,
        instance_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[HistoryEntry]:
        since = ensure_utc(since) if since else None
        until = ensure_utc(until) if until else None
        with self._locked(timeout):
            entries = [
                e for e in self._history
                if (instance_id is None or e.instance_id == instance_id)
                and (actor_id is None or e.actor_id == actor_id)
                and (since is None or e.timestamp >= since)
                and (until is None or e.timestamp <= until)
            ]
        return sorted(entries, key=lambda e: (e.timestamp, e.sequence))

    # ------------------------------------------------------------------
    def save_task(self, task: PendingTask, timeout: Optional[float] = None) -> PendingTask:
        with self._locked(timeout):
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task

    def close_task(
        self,
        task_id: str,
        closed_at: datetime,
        reason: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> None:
        with self._locked(timeout):
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            self._tasks[task_id] = task.model_copy(update={
                "status": TaskStatus.DONE,
                "closed_at": closed_at,
                "closed_reason": reason
            })

    def get_task(self, task_id: str, timeout: Optional[float] = None) -> Optional[PendingTask]:
        with self._locked(timeout):
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(
        self,
        instance_id: Optional[str] = None,
        assignee_role: Optional[str] = None,
        assignee_user_id: Optional[str] = None,
        statuses: Optional[List[TaskStatus]] = None,
        due_before: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[PendingTask]:
        with self._locked(timeout):
            tasks = [
                t.model_copy(deep=True) for t in self._tasks.values()
                if (instance_id is None or t.instance_id == instance_id)
                and (assignee_role is None or t.assignee_role == assignee_role)
                and (assignee_user_id is None or t.assignee_user_id == assignee_user_id)
                and (statuses is None or t.status in statuses)
                and (due_before is None or is_overdue(t.due_at, now=due_before))
            ]
        return sorted(tasks, key=lambda t: t.created_at)
