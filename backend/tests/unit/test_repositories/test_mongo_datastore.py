"""MongoDB datastore tests against mocked collections."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure, ServerSelectionTimeoutError

from caseflow.domain.enums import HistoryEventType, InstanceStatus, TaskStatus
from caseflow.domain.errors import (
    InstanceNotFoundError, PersistenceError, TaskNotFoundError, VersionConflictError
)
from caseflow.domain.models import HistoryEntry, WorkflowInstance
from caseflow.repositories.mongo import MongoDatastore, is_write_conflict
from caseflow.repositories.mongo_client import (
    HISTORY_COLLECTION, INSTANCES_COLLECTION, TASKS_COLLECTION, create_indexes
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def collections():
    return {
        INSTANCES_COLLECTION: MagicMock(name="instances"),
        HISTORY_COLLECTION: MagicMock(name="history"),
        TASKS_COLLECTION: MagicMock(name="tasks"),
    }


@pytest.fixture
def database(collections):
    db = MagicMock(name="database")
    db.get_collection.side_effect = lambda name: collections[name]
    return db


@pytest.fixture
def store(database):
    return MongoDatastore(database)


def instance_doc(version=1, step="draft"):
    return {
        "_id": "WFI-1",
        "instance_id": "WFI-1",
        "definition_name": "consent_review",
        "current_step_id": step,
        "context": {"applicant_id": "citizen-9"},
        "status": "active",
        "created_at": NOW,
        "updated_at": NOW,
        "version": version,
    }


def make_instance(version=1, step="draft"):
    doc = instance_doc(version, step)
    doc.pop("_id")
    return WorkflowInstance.model_validate(doc)


def test_insert_uses_instance_id_as_key(store, collections):
    store.save_instance(make_instance())

    doc = collections[INSTANCES_COLLECTION].insert_one.call_args.args[0]
    assert doc["_id"] == "WFI-1"
    assert doc["status"] == InstanceStatus.ACTIVE
    assert doc["created_at"] == NOW


def test_duplicate_insert_is_persistence_error(store, collections):
    collections[INSTANCES_COLLECTION].insert_one.side_effect = DuplicateKeyError("dup")

    with pytest.raises(PersistenceError, match="already exists"):
        store.save_instance(make_instance())


def test_conditional_update_filters_on_version(store, collections):
    instances = collections[INSTANCES_COLLECTION]
    instances.find_one_and_update.return_value = instance_doc(version=2)

    store.save_instance(make_instance(version=2, step="submitted"), expected_version=1)

    query, update = instances.find_one_and_update.call_args.args
    assert query == {"instance_id": "WFI-1", "version": 1}
    assert update["$set"]["version"] == 2
    assert update["$set"]["current_step_id"] == "submitted"


def test_version_conflict(store, collections):
    instances = collections[INSTANCES_COLLECTION]
    instances.find_one_and_update.return_value = None
    instances.find_one.return_value = {"version": 3}

    with pytest.raises(VersionConflictError) as exc:
        store.save_instance(make_instance(version=2), expected_version=1)

    assert exc.value.details == {"expected_version": 1, "actual_version": 3}


def write_conflict():
    return OperationFailure(
        "WriteConflict error: this operation conflicted with another operation",
        code=112,
        details={"errorLabels": ["TransientTransactionError"]},
    )


def test_write_conflict_inside_transaction_is_version_conflict(store, database, collections):
    database.client.start_session.return_value.__enter__.return_value = MagicMock(name="session")
    collections[INSTANCES_COLLECTION].find_one_and_update.side_effect = write_conflict()

    with pytest.raises(VersionConflictError):
        with store.transaction(timeout=1.0):
            store.save_instance(make_instance(version=2), expected_version=1)


def test_transient_commit_failure_is_version_conflict(store, database):
    session = MagicMock(name="session")
    session.start_transaction.return_value.__exit__.side_effect = OperationFailure(
        "commit aborted", code=251, details={"errorLabels": ["TransientTransactionError"]}
    )
    database.client.start_session.return_value.__enter__.return_value = session

    with pytest.raises(VersionConflictError):
        with store.transaction():
            pass


def test_only_operation_failures_count_as_write_conflicts():
    assert is_write_conflict(write_conflict())
    assert is_write_conflict(OperationFailure("WriteConflict", code=112))
    assert not is_write_conflict(OperationFailure("bad query", code=2))
    assert not is_write_conflict(ServerSelectionTimeoutError("no primary"))


def test_update_of_missing_instance(store, collections):
    instances = collections[INSTANCES_COLLECTION]
    instances.find_one_and_update.return_value = None
    instances.find_one.return_value = None

    with pytest.raises(InstanceNotFoundError):
        store.save_instance(make_instance(version=2), expected_version=1)


def test_load_instance_strips_object_id(store, collections):
    collections[INSTANCES_COLLECTION].find_one.return_value = instance_doc(version=4)

    instance = store.load_instance("WFI-1", timeout=2.0)

    assert instance.version == 4
    assert instance.context == {"applicant_id": "citizen-9"}


def test_driver_errors_become_persistence_errors(store, collections):
    collections[INSTANCES_COLLECTION].find_one.side_effect = ServerSelectionTimeoutError("no primary")

    with pytest.raises(PersistenceError) as exc:
        store.load_instance("WFI-1")

    assert exc.value.details == {"operation": "load_instance"}


def test_transaction_shares_session(store, database, collections):
    session = MagicMock(name="session")
    database.client.start_session.return_value.__enter__.return_value = session

    with store.transaction(timeout=1.0):
        store.save_instance(make_instance())
        store.close_task("TASK-1", NOW, reason="transitioned")

    session.start_transaction.assert_called_once()
    assert collections[INSTANCES_COLLECTION].insert_one.call_args.kwargs["session"] is session
    assert collections[TASKS_COLLECTION].update_one.call_args.kwargs["session"] is session

    # Outside the transaction calls no longer carry the session
    store.save_instance(make_instance())
    assert collections[INSTANCES_COLLECTION].insert_one.call_args.kwargs["session"] is None


def test_nested_transaction_reuses_outer_session(store, database):
    session = MagicMock(name="session")
    database.client.start_session.return_value.__enter__.return_value = session

    with store.transaction():
        with store.transaction():
            pass

    database.client.start_session.assert_called_once()


def test_query_history_builds_range_filter(store, collections):
    history = collections[HISTORY_COLLECTION]
    history.find.return_value.sort.return_value = [{
        "_id": "HIS-1",
        "history_id": "HIS-1",
        "instance_id": "WFI-1",
        "definition_name": "consent_review",
        "sequence": 1,
        "event_type": "started",
        "from_step_id": None,
        "to_step_id": "draft",
        "trigger": "start",
        "actor_id": "clerk",
        "timestamp": NOW,
    }]
    until = datetime(2026, 4, 1, tzinfo=timezone.utc)

    entries = store.query_history(actor_id="clerk", since=NOW, until=until)

    assert history.find.call_args.args[0] == {
        "actor_id": "clerk",
        "timestamp": {"$gte": NOW, "$lte": until},
    }
    assert isinstance(entries[0], HistoryEntry)
    assert entries[0].event_type == HistoryEventType.STARTED


def test_append_history_uses_history_id(store, collections):
    entry = HistoryEntry(
        history_id="HIS-9",
        instance_id="WFI-1",
        definition_name="consent_review",
        sequence=2,
        event_type=HistoryEventType.TRANSITIONED,
        from_step_id="draft",
        to_step_id="submitted",
        trigger="submit",
        actor_id="citizen-9",
        timestamp=NOW,
    )

    store.append_history(entry)

    assert collections[HISTORY_COLLECTION].insert_one.call_args.args[0]["_id"] == "HIS-9"


def test_close_unknown_task(store, collections):
    collections[TASKS_COLLECTION].update_one.return_value.matched_count = 0

    with pytest.raises(TaskNotFoundError):
        store.close_task("TASK-404", NOW)


def test_list_tasks_query(store, collections):
    tasks = collections[TASKS_COLLECTION]
    tasks.find.return_value.sort.return_value = []

    store.list_tasks(assignee_role="inspector", statuses=[TaskStatus.OPEN], due_before=NOW, timeout=0.5)

    assert tasks.find.call_args.args[0] == {
        "assignee_role": "inspector",
        "status": {"$in": ["open"]},
        "due_at": {"$ne": None, "$lt": NOW},
    }


def test_count_instances_from_aggregate(store, collections):
    collections[INSTANCES_COLLECTION].aggregate.return_value = [
        {"_id": {"definition_name": "consent_review", "status": "active", "step": "draft"}, "count": 2},
        {"_id": {"definition_name": "consent_review", "status": "cancelled", "step": "draft"}, "count": 1},
    ]

    counts = store.count_instances()

    assert counts["consent_review"]["by_status"] == {"active": 2, "cancelled": 1}
    assert counts["consent_review"]["by_step"] == {"draft": 3}


def test_create_indexes_covers_history_queries():
    db = MagicMock(name="database")

    create_indexes(db)

    history = db.__getitem__.return_value
    assert history.create_index.called


def test_reads_run_under_a_deadline(store, collections, monkeypatch):
    deadlines = []

    def record_timeout(seconds):
        deadlines.append(seconds)
        return MagicMock(name="deadline")

    monkeypatch.setattr("caseflow.repositories.mongo.pymongo.timeout", record_timeout)
    collections[HISTORY_COLLECTION].find.return_value.sort.return_value = []
    collections[TASKS_COLLECTION].find_one.return_value = None
    collections[INSTANCES_COLLECTION].aggregate.return_value = []

    store.get_history("WFI-1", timeout=1.5)
    store.get_task("TASK-1", timeout=2.5)
    store.count_instances(timeout=3.5)

    assert deadlines == [1.5, 2.5, 3.5]
