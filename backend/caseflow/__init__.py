"""Caseflow - Workflow engine for case-management modules"""
from .bootstrap import create_engine
from .engine import WorkflowEngine, DefinitionRegistry

__version__ = "1.0.0"

__all__ = ["create_engine", "WorkflowEngine", "DefinitionRegistry", "__version__"]
