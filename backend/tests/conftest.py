"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
"""

import copy
from typing import Any, Dict, List, Tuple

import pytest

from caseflow.config.settings import Settings
from caseflow.engine.engine import WorkflowEngine
from caseflow.engine.registry import DefinitionRegistry
from caseflow.repositories.memory import InMemoryDatastore


CONSENT_DEFINITION: Dict[str, Any] = {
    "name": "consent_review",
    "display_name": "Consent Review",
    "initial": "draft",
    "steps": [
        {
            "id": "draft",
            "display_name": "Application Draft",
            "assignee": "context:applicant_id",
            "transitions": [
                {"trigger": "submit", "target": "submitted"},
                {"trigger": "withdraw", "target": None},
            ],
        },
        {
            "id": "submitted",
            "display_name": "Application Submitted",
            "assignee": "role:consent_officer",
            "due_in_days": 5,
            "transitions": [
                {
                    "trigger": "approve",
                    "target": "approved",
                    "side_effects": [
                        {"template_key": "CONSENT_APPROVED", "recipients": ["context:applicant_id", "actor"]}
                    ],
                },
                {"trigger": "reject", "target": "rejected"},
                {"trigger": "request_info", "target": "submitted"},
            ],
        },
        {"id": "approved", "display_name": "Consent Approved"},
        {"id": "rejected", "display_name": "Application Rejected"},
    ],
}

COMPLIANCE_DEFINITION: Dict[str, Any] = {
    "name": "compliance_check",
    "initial": "compliance_pending",
    "context_fields": {"compliant": "boolean", "days_overdue": "integer", "inspector_id": "string"},
    "steps": [
        {
            "id": "compliance_pending",
            "assignee": {"kind": "context_user", "field": "inspector_id", "fallback_role": "code_inspector"},
            "due_in_minutes": 90,
            "transitions": [
                {
                    "trigger": "resolve",
                    "target": "complied",
                    "guard": {"field": "compliant", "operator": "EQUALS", "value": True},
                },
                {
                    "trigger": "resolve",
                    "target": "non_compliant",
                    "guard": {"field": "compliant", "operator": "EQUALS", "value": False},
                },
                {"trigger": "appeal", "target": "appeal_filed"},
            ],
        },
        {"id": "complied"},
        {"id": "non_compliant"},
        {"id": "appeal_filed"},
    ],
}


class RecordingNotifier:
    """Notifier that keeps dispatched notifications in memory"""

    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail

    def dispatch(self, template_key: str, recipient: str, context_vars: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append((template_key, recipient, context_vars))


@pytest.fixture
def consent_definition() -> Dict[str, Any]:
    return copy.deepcopy(CONSENT_DEFINITION)


@pytest.fixture
def compliance_definition() -> Dict[str, Any]:
    return copy.deepcopy(COMPLIANCE_DEFINITION)


@pytest.fixture
def registry(consent_definition, compliance_definition) -> DefinitionRegistry:
    registry = DefinitionRegistry()
    registry.register(consent_definition)
    registry.register(compliance_definition)
    registry.freeze()
    return registry


@pytest.fixture
def datastore() -> InMemoryDatastore:
    return InMemoryDatastore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine_settings() -> Settings:
    return Settings(
        datastore_backend="memory",
        fire_max_attempts=3,
        persistence_retries=1,
        persistence_timeout_seconds=5.0,
    )


@pytest.fixture
def engine(registry, datastore, notifier, engine_settings) -> WorkflowEngine:
    return WorkflowEngine(registry, datastore, notifier=notifier, config=engine_settings)
