"""Definition registry and loader tests."""

import json
import logging

import pytest

from caseflow.domain.errors import DefinitionError, DefinitionNotFoundError
from caseflow.domain.models import WorkflowDefinition
from caseflow.engine.definition_loader import load_definition_file, load_definitions
from caseflow.engine.registry import DefinitionRegistry


def test_register_and_get(consent_definition):
    registry = DefinitionRegistry()
    definition = registry.register(consent_definition)

    assert isinstance(definition, WorkflowDefinition)
    assert registry.get("consent_review") is definition
    assert "consent_review" in registry
    assert len(registry) == 1
    assert definition.get_initial_step_id() == "draft"


def test_get_unknown_definition_raises():
    with pytest.raises(DefinitionNotFoundError):
        DefinitionRegistry().get("missing_process")


def test_dangling_target_rejected(consent_definition):
    consent_definition["steps"][0]["transitions"][0]["target"] = "nowhere"

    with pytest.raises(DefinitionError) as exc:
        DefinitionRegistry().register(consent_definition)

    assert "nowhere" in exc.value.message
    assert exc.value.details["definition_name"] == "consent_review"


def test_missing_initial_step_rejected(consent_definition):
    del consent_definition["initial"]

    with pytest.raises(DefinitionError, match="initial step"):
        DefinitionRegistry().register(consent_definition)


def test_initial_flag_on_step_is_accepted(consent_definition):
    del consent_definition["initial"]
    consent_definition["steps"][0]["initial"] = True

    definition = DefinitionRegistry().register(consent_definition)

    assert definition.get_initial_step_id() == "draft"


def test_two_initial_steps_rejected(consent_definition):
    del consent_definition["initial"]
    consent_definition["steps"][0]["initial"] = True
    consent_definition["steps"][1]["initial"] = True

    with pytest.raises(DefinitionError, match="More than one initial step"):
        DefinitionRegistry().register(consent_definition)


def test_definition_without_terminal_rejected():
    looping = {
        "name": "loop",
        "initial": "a",
        "steps": [
            {"id": "a", "transitions": [{"trigger": "next", "target": "b"}]},
            {"id": "b", "transitions": [{"trigger": "back", "target": "a"}]},
        ],
    }

    with pytest.raises(DefinitionError, match="terminal"):
        DefinitionRegistry().register(looping)


def test_duplicate_step_ids_rejected(consent_definition):
    consent_definition["steps"].append({"id": "approved"})

    with pytest.raises(DefinitionError, match="Duplicate step id"):
        DefinitionRegistry().register(consent_definition)


def test_malformed_definition_reports_field(consent_definition):
    consent_definition["steps"][0]["transitions"][0]["guard"] = {
        "field": "amount", "operator": "ROUGHLY", "value": 3
    }

    with pytest.raises(DefinitionError) as exc:
        DefinitionRegistry().register(consent_definition)

    assert exc.value.details["errors"]


def test_reregister_identical_is_noop(consent_definition):
    registry = DefinitionRegistry()
    first = registry.register(consent_definition)
    second = registry.register(dict(consent_definition))

    assert first is second
    assert len(registry) == 1


def test_reregister_different_shape_rejected(consent_definition):
    registry = DefinitionRegistry()
    registry.register(consent_definition)

    consent_definition["steps"][1]["transitions"].pop()
    with pytest.raises(DefinitionError, match="different shape"):
        registry.register(consent_definition)


def test_frozen_registry_refuses_registration(consent_definition, compliance_definition):
    registry = DefinitionRegistry()
    registry.register(consent_definition)
    registry.freeze()

    assert registry.frozen
    with pytest.raises(DefinitionError, match="frozen"):
        registry.register(compliance_definition)


def test_guard_on_undeclared_context_field_rejected(compliance_definition):
    del compliance_definition["context_fields"]["compliant"]

    with pytest.raises(DefinitionError, match="undeclared context field: compliant"):
        DefinitionRegistry().register(compliance_definition)


def test_ordering_guard_on_boolean_field_rejected(compliance_definition):
    guard = compliance_definition["steps"][0]["transitions"][0]["guard"]
    guard["operator"] = "GREATER_THAN"

    with pytest.raises(DefinitionError, match="GREATER_THAN"):
        DefinitionRegistry().register(compliance_definition)


def test_unreachable_step_only_warns(consent_definition, caplog):
    consent_definition["steps"].append({"id": "archived"})

    with caplog.at_level(logging.WARNING):
        DefinitionRegistry().register(consent_definition)

    assert "archived" in caplog.text


def test_assignee_shorthand_parsing(consent_definition):
    definition = DefinitionRegistry().register(consent_definition)

    draft = definition.get_step("draft")
    submitted = definition.get_step("submitted")
    assert draft.assignee.kind.value == "context_user"
    assert draft.assignee.field == "applicant_id"
    assert submitted.assignee.kind.value == "role"
    assert submitted.assignee.role == "consent_officer"


def test_load_definition_file_uses_file_stem(tmp_path, consent_definition):
    del consent_definition["name"]
    path = tmp_path / "permit_flow.json"
    path.write_text(json.dumps(consent_definition), encoding="utf-8")

    data = load_definition_file(path)

    assert data["name"] == "permit_flow"


def test_load_definitions_from_directory(tmp_path):
    (tmp_path / "inspection_process.yaml").write_text(
        "initial: scheduled\n"
        "steps:\n"
        "  - id: scheduled\n"
        "    assignee: role:inspector\n"
        "    transitions:\n"
        "      - trigger: inspect\n"
        "        to: passed\n"
        "  - id: passed\n",
        encoding="utf-8",
    )
    (tmp_path / "README.txt").write_text("ignored", encoding="utf-8")
    registry = DefinitionRegistry()

    loaded = load_definitions(tmp_path, registry)

    assert [d.name for d in loaded] == ["inspection_process"]
    step = registry.get("inspection_process").get_step("scheduled")
    assert step.transitions[0].target == "passed"


def test_load_definitions_names_bad_file(tmp_path):
    (tmp_path / "broken.yaml").write_text(
        "initial: a\nsteps:\n  - id: a\n    transitions:\n      - trigger: go\n        target: b\n",
        encoding="utf-8",
    )

    with pytest.raises(DefinitionError) as exc:
        load_definitions(tmp_path, DefinitionRegistry())

    assert exc.value.details["path"].endswith("broken.yaml")


def test_load_definitions_unparseable_yaml(tmp_path):
    (tmp_path / "bad.yml").write_text("steps: [unclosed", encoding="utf-8")

    with pytest.raises(DefinitionError, match="Cannot read"):
        load_definitions(tmp_path, DefinitionRegistry())


def test_missing_directory_is_fatal(tmp_path):
    with pytest.raises(DefinitionError, match="not found"):
        load_definitions(tmp_path / "nope", DefinitionRegistry())


def test_shipped_definitions_are_valid():
    """The sample definitions under backend/definitions load cleanly."""
    from pathlib import Path

    directory = Path(__file__).resolve().parents[3] / "definitions"
    registry = DefinitionRegistry()

    loaded = load_definitions(directory, registry)

    assert registry.names() == [
        "building_consent_process",
        "code_enforcement_process",
        "environmental_permit_process",
    ]
    assert len(loaded) == 3
