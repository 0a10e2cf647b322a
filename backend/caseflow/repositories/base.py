"""Datastore contract - Persistence collaborator consumed by the engine"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Dict, List, Optional

from ..domain.models import WorkflowInstance, HistoryEntry, PendingTask
from ..domain.enums import InstanceStatus, TaskStatus


class Datastore(ABC):
    """
    Storage for instances, history and pending tasks

    Writes issued inside ``transaction()`` commit together or not at all.
    Every call takes an optional ``timeout`` in seconds and raises
    PersistenceError rather than wait past it.
    Implementations raise PersistenceError for storage failures and
    VersionConflictError when a conditional instance write loses a race.
    """

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    def transaction(self, timeout: Optional[float] = None) -> AbstractContextManager:
        """Unit of work: commit on clean exit, roll back on exception"""

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    @abstractmethod
    def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """
        Insert (expected_version=None) or conditionally replace an instance

        The stored version must equal ``expected_version``; the caller
        sets ``instance.version`` to the new value.
        """

    @abstractmethod
    def load_instance(
        self,
        instance_id: str,
        timeout: Optional[float] = None
    ) -> Optional[WorkflowInstance]:
        """Load an instance with its current version, or None"""

    @abstractmethod
    def list_instances(
        self,
        definition_name: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        timeout: Optional[float] = None
    ) -> List[WorkflowInstance]:
        """List instances, optionally filtered"""

    def count_instances(
        self,
        definition_name: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Dict[str, Dict[str, int]]]:
        """
        Count instances per definition, by status and by current step

        Returns {definition_name: {"by_status": {...}, "by_step": {...}}}
        """
        counts: Dict[str, Dict[str, Dict[str, int]]] = {}
        for instance in self.list_instances(definition_name=definition_name, timeout=timeout):
            bucket = counts.setdefault(instance.definition_name, {"by_status": {}, "by_step": {}})
            status = instance.status.value
            bucket["by_status"][status] = bucket["by_status"].get(status, 0) + 1
            step = instance.current_step_id
            bucket["by_step"][step] = bucket["by_step"].get(step, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # History (append-only)
    # ------------------------------------------------------------------

    @abstractmethod
    def append_history(self, entry: HistoryEntry, timeout: Optional[float] = None) -> HistoryEntry:
        """Append one immutable history entry"""

    @abstractmethod
    def get_history(self, instance_id: str, timeout: Optional[float] = None) -> List[HistoryEntry]:
        """History for an instance, oldest first"""

    @abstractmethod
    def query_history(
        self,
        instance_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[HistoryEntry]:
        """History filtered by instance, actor and/or [since, until], oldest first"""

    # ------------------------------------------------------------------
    # Pending tasks
    # ------------------------------------------------------------------

    @abstractmethod
    def save_task(self, task: PendingTask, timeout: Optional[float] = None) -> PendingTask:
        """Insert or replace a task"""

    @abstractmethod
    def close_task(
        self,
        task_id: str,
        closed_at: datetime,
        reason: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> None:
        """Mark a task done"""

    @abstractmethod
    def get_task(self, task_id: str, timeout: Optional[float] = None) -> Optional[PendingTask]:
        """Get task by ID"""

    @abstractmethod
    def list_tasks(
        self,
        instance_id: Optional[str] = None,
        assignee_role: Optional[str] = None,
        assignee_user_id: Optional[str] = None,
        statuses: Optional[List[TaskStatus]] = None,
        due_before: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[PendingTask]:
        """List tasks matching all given filters, oldest first"""

    def list_open_tasks(self, instance_id: str, timeout: Optional[float] = None) -> List[PendingTask]:
        """Open or claimed tasks for an instance"""
        return self.list_tasks(
            instance_id=instance_id,
            statuses=[TaskStatus.OPEN, TaskStatus.CLAIMED],
            timeout=timeout
        )
