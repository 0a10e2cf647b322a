"""MongoDB implementation of the Datastore"""
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import pymongo
from pymongo import ASCENDING, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from ..domain.models import WorkflowInstance, HistoryEntry, PendingTask
from ..domain.enums import InstanceStatus, TaskStatus
from ..domain.errors import (
    PersistenceError, VersionConflictError, InstanceNotFoundError, TaskNotFoundError
)
from .base import Datastore
from .mongo_client import (
    get_database, INSTANCES_COLLECTION, HISTORY_COLLECTION, TASKS_COLLECTION
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

WRITE_CONFLICT_CODE = 112


def is_write_conflict(error: PyMongoError) -> bool:
    """A concurrent transaction touched the same document; the caller should re-read"""
    if not isinstance(error, OperationFailure):
        return False
    return error.code == WRITE_CONFLICT_CODE or error.has_error_label("TransientTransactionError")


class MongoDatastore(Datastore):
    """
    Datastore backed by MongoDB collections

    Instances use optimistic concurrency on the ``version`` field.
    Transactions use a client session (requires a replica set); the
    active session is tracked per thread so repository calls made inside
    ``transaction()`` join it.
    """

    def __init__(self, database: Optional[Database] = None):
        self._db = database if database is not None else get_database()
        self._instances = self._db.get_collection(INSTANCES_COLLECTION)
        self._history = self._db.get_collection(HISTORY_COLLECTION)
        self._tasks = self._db.get_collection(TASKS_COLLECTION)
        self._local = threading.local()

    # =========================================================================
    # Sessions & error mapping
    # =========================================================================

    def _session(self) -> Optional[ClientSession]:
        return getattr(self._local, "session", None)

    def _deadline(self, timeout: Optional[float]):
        return pymongo.timeout(timeout) if timeout else nullcontext()

    @contextmanager
    def _call(self, operation: str, timeout: Optional[float] = None) -> Iterator[None]:
        try:
            with self._deadline(timeout):
                yield
        except PyMongoError as e:
            if is_write_conflict(e):
                logger.warning(f"Write conflict during {operation}: {e}")
                raise VersionConflictError(
                    f"Concurrent write during {operation}",
                    details={"operation": operation}
                ) from e
            logger.error(f"Datastore {operation} failed: {e}")
            raise PersistenceError(
                f"Datastore {operation} failed: {e}",
                details={"operation": operation}
            ) from e

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator["MongoDatastore"]:
        if self._session() is not None:
            # Already inside a unit of work on this thread
            yield self
            return

        with self._call("transaction", timeout):
            with self._db.client.start_session() as session:
                with session.start_transaction():
                    self._local.session = session
                    try:
                        yield self
                    finally:
                        self._local.session = None

    @staticmethod
    def _to_doc(model) -> Dict[str, Any]:
        # Keep datetimes native (mode="json" would break range queries and sorting)
        return model.model_dump()

    @staticmethod
    def _strip(doc: Dict[str, Any]) -> Dict[str, Any]:
        doc.pop("_id", None)
        return doc

    # =========================================================================
    # Instances
    # =========================================================================

    def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> WorkflowInstance:
        doc = self._to_doc(instance)
        session = self._session()

        with self._call("save_instance", timeout):
            if expected_version is None:
                try:
                    self._instances.insert_one(
                        {"_id": instance.instance_id, **doc}, session=session
                    )
                except DuplicateKeyError as e:
                    raise PersistenceError(
                        f"Instance {instance.instance_id} already exists",
                        details={"instance_id": instance.instance_id}
                    ) from e
                logger.info(
                    f"Created workflow instance: {instance.instance_id}",
                    extra={"instance_id": instance.instance_id}
                )
                return instance

            result = self._instances.find_one_and_update(
                {"instance_id": instance.instance_id, "version": expected_version},
                {"$set": doc},
                return_document=ReturnDocument.AFTER,
                session=session
            )
            if result is None:
                exists = self._instances.find_one(
                    {"instance_id": instance.instance_id}, {"version": 1}, session=session
                )
                if exists:
                    raise VersionConflictError(
                        f"Instance {instance.instance_id} was modified",
                        details={
                            "expected_version": expected_version,
                            "actual_version": exists.get("version")
                        }
                    )
                raise InstanceNotFoundError(f"Instance {instance.instance_id} not found")

        return instance

    def load_instance(
        self,
        instance_id: str,
        timeout: Optional[float] = None
    ) -> Optional[WorkflowInstance]:
        with self._call("load_instance", timeout):
            doc = self._instances.find_one({"instance_id": instance_id}, session=self._session())
        if doc:
            return WorkflowInstance.model_validate(self._strip(doc))
        return None

    def list_instances(
        self,
        definition_name: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        timeout: Optional[float] = None
    ) -> List[WorkflowInstance]:
        query: Dict[str, Any] = {}
        if definition_name:
            query["definition_name"] = definition_name
        if status:
            query["status"] = status.value

        with self._call("list_instances", timeout):
            cursor = self._instances.find(query).sort("created_at", ASCENDING)
            return [WorkflowInstance.model_validate(self._strip(doc)) for doc in cursor]

    def count_instances(
        self,
        definition_name: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Dict[str, Dict[str, int]]]:
        pipeline: List[Dict[str, Any]] = []
        if definition_name:
            pipeline.append({"$match": {"definition_name": definition_name}})
        pipeline.append({
            "$group": {
                "_id": {
                    "definition_name": "$definition_name",
                    "status": "$status",
                    "step": "$current_step_id"
                },
                "count": {"$sum": 1}
            }
        })

        counts: Dict[str, Dict[str, Dict[str, int]]] = {}
        with self._call("count_instances", timeout):
            for row in self._instances.aggregate(pipeline):
                key = row["_id"]
                bucket = counts.setdefault(key["definition_name"], {"by_status": {}, "by_step": {}})
                bucket["by_status"][key["status"]] = bucket["by_status"].get(key["status"], 0) + row["count"]
                bucket["by_step"][key["step"]] = bucket["by_step"].get(key["step"], 0) + row["count"]
        return counts

    # =========================================================================
    # History (append-only)
    # =========================================================================

    def append_history(self, entry: HistoryEntry, timeout: Optional[float] = None) -> HistoryEntry:
        with self._call("append_history", timeout):
            self._history.insert_one(
                {"_id": entry.history_id, **self._to_doc(entry)}, session=self._session()
            )
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
        query: Dict[str, Any] = {}
        if instance_id:
            query["instance_id"] = instance_id
        if actor_id:
            query["actor_id"] = actor_id
        if since or until:
            query["timestamp"] = {}
            if since:
                query["timestamp"]["$gte"] = since
            if until:
                query["timestamp"]["$lte"] = until

        with self._call("query_history", timeout):
            cursor = self._history.find(query).sort([("timestamp", ASCENDING), ("sequence", ASCENDING)])
            return [HistoryEntry.model_validate(self._strip(doc)) for doc in cursor]

    # =========================================================================
    # Pending tasks
    # =========================================================================

    def save_task(self, task: PendingTask, timeout: Optional[float] = None) -> PendingTask:
        with self._call("save_task", timeout):
            self._tasks.replace_one(
                {"task_id": task.task_id},
                {"_id": task.task_id, **self._to_doc(task)},
                upsert=True,
                session=self._session()
            )
        logger.info(
            f"Saved pending task: {task.task_id}",
            extra={"task_id": task.task_id, "instance_id": task.instance_id, "step_id": task.step_id}
        )
        return task

    def close_task(
        self,
        task_id: str,
        closed_at: datetime,
        reason: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> None:
        with self._call("close_task", timeout):
            result = self._tasks.update_one(
                {"task_id": task_id},
                {"$set": {
                    "status": TaskStatus.DONE.value,
                    "closed_at": closed_at,
                    "closed_reason": reason
                }},
                session=self._session()
            )
        if result.matched_count == 0:
            raise TaskNotFoundError(f"Task {task_id} not found")

    def get_task(self, task_id: str, timeout: Optional[float] = None) -> Optional[PendingTask]:
        with self._call("get_task", timeout):
            doc = self._tasks.find_one({"task_id": task_id}, session=self._session())
        if doc:
            return PendingTask.model_validate(self._strip(doc))
        return None

    def list_tasks(
        self,
        instance_id: Optional[str] = None,
        assignee_role: Optional[str] = None,
        assignee_user_id: Optional[str] = None,
        statuses: Optional[List[TaskStatus]] = None,
        due_before: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[PendingTask]:
        query: Dict[str, Any] = {}
        if instance_id:
            query["instance_id"] = instance_id
        if assignee_role:
            query["assignee_role"] = assignee_role
        if assignee_user_id:
            query["assignee_user_id"] = assignee_user_id
        if statuses:
            query["status"] = {"$in": [s.value for s in statuses]}
        if due_before:
            query["due_at"] = {"$ne": None, "$lt": due_before}

        with self._call("list_tasks", timeout):
            cursor = self._tasks.find(query, session=self._session()).sort("created_at", ASCENDING)
            return [PendingTask.model_validate(self._strip(doc)) for doc in cursor]
