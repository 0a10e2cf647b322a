"""Workflow Engine - The brain of the system"""
from .engine import WorkflowEngine
from .registry import DefinitionRegistry
from .definition_loader import load_definition_file, load_definitions
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .assignment_resolver import AssignmentResolver
from .audit_writer import AuditWriter

__all__ = [
    "WorkflowEngine",
    "DefinitionRegistry",
    "load_definition_file",
    "load_definitions",
    "TransitionResolver",
    "ConditionEvaluator",
    "AssignmentResolver",
    "AuditWriter",
]
