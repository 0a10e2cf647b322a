"""Bootstrap and notifier tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from caseflow.bootstrap import create_datastore, create_engine
from caseflow.config.settings import Settings
from caseflow.domain.enums import NotificationStatus
from caseflow.domain.errors import DefinitionError
from caseflow.repositories.memory import InMemoryDatastore
from caseflow.services.notifier import LoggingNotifier, Notifier, OutboxNotifier

DEFINITIONS = Path(__file__).resolve().parents[3] / "definitions"


def test_create_engine_loads_and_freezes_definitions():
    engine = create_engine(Settings(definitions_path=str(DEFINITIONS)))

    assert engine.registry.frozen
    assert "code_enforcement_process" in engine.registry
    assert isinstance(engine.datastore, InMemoryDatastore)
    assert isinstance(engine.notifier, LoggingNotifier)


def test_create_engine_with_bad_definitions_aborts(tmp_path):
    (tmp_path / "broken.json").write_text('{"initial": "a", "steps": []}', encoding="utf-8")

    with pytest.raises(DefinitionError):
        create_engine(Settings(definitions_path=str(tmp_path)))


def test_create_datastore_defaults_to_memory():
    assert isinstance(create_datastore(Settings(datastore_backend="memory")), InMemoryDatastore)


def test_code_enforcement_compliance_branching():
    engine = create_engine(Settings(definitions_path=str(DEFINITIONS)))
    instance_id = engine.start(
        "code_enforcement_process",
        {"case_number": "CE-2026-118", "owner_id": "owner-5", "inspector_id": "insp-2"},
        actor_id="intake-1",
    )

    for trigger, patch in [
        ("assign_inspector", None),
        ("record_findings", {"violation_confirmed": True}),
        ("issue_notice", None),
        ("start_compliance_period", None),
        ("review_compliance", {"compliance_status": "overdue"}),
    ]:
        assert engine.fire(instance_id, trigger, actor_id="insp-2", context_patch=patch).accepted

    status = engine.get_status(instance_id)
    assert status.instance.current_step_id == "non_compliant"
    assert status.available_triggers == ["escalate"]


def test_environmental_permit_surrender_completes():
    engine = create_engine(Settings(definitions_path=str(DEFINITIONS)))
    instance_id = engine.start(
        "environmental_permit_process",
        {"permit_id": "EP-7", "applicant_id": "firm-3", "assessment_level": "basic", "risk_score": 12},
        actor_id="firm-3",
    )

    for trigger, patch in [
        ("submit", None),
        ("accept", None),
        ("screen", None),
        ("complete_screening", None),
        ("decide", {"decision": "approve"}),
        ("issue", None),
        ("activate_monitoring", None),
        ("surrender", None),
    ]:
        result = engine.fire(instance_id, trigger, actor_id="officer-1", context_patch=patch)
        assert result.accepted, trigger

    instance = engine.get_instance(instance_id)
    assert instance.status.value == "completed"
    assert instance.current_step_id == "permit_active"


def test_notifiers_satisfy_protocol():
    assert isinstance(LoggingNotifier(), Notifier)
    assert isinstance(OutboxNotifier(collection=MagicMock()), Notifier)


def test_outbox_notifier_enqueues_pending_notification():
    outbox = MagicMock(name="outbox")
    notifier = OutboxNotifier(collection=outbox)

    notifier.dispatch("CONSENT_APPROVED", "citizen-9", {"instance_id": "WFI-1", "to_step_id": "approved"})

    doc = outbox.insert_one.call_args.args[0]
    assert doc["_id"] == doc["notification_id"]
    assert doc["instance_id"] == "WFI-1"
    assert doc["recipient"] == "citizen-9"
    assert doc["status"] == NotificationStatus.PENDING
    assert doc["payload"]["to_step_id"] == "approved"
