"""
Test Suite

This module contains all tests for the caseflow workflow engine.

Structure:
    tests/
    ├── __init__.py             # This file
    ├── conftest.py             # Pytest fixtures
    └── unit/                   # Unit tests
        ├── __init__.py
        ├── test_engine/        # Registry, resolvers, engine
        ├── test_repositories/  # In-memory and Mongo datastores
        └── test_utils/         # Utility tests

To run tests:
    pytest backend/tests/
    pytest backend/tests/unit/test_engine/
"""
