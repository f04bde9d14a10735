"""
Test Suite

Structure:
    tests/
    ├── conftest.py         # Pytest fixtures (in-memory store, fake clock)
    ├── helpers.py          # Test doubles and builders
    ├── unit/
    │   ├── test_engine/        # Graph, conditions, transitions, gates, gateway, audit
    │   └── test_repositories/  # In-memory and MongoDB repositories
    └── integration/
        ├── test_orchestration.py  # End-to-end run behaviour
        └── test_api/              # HTTP endpoints

To run tests:
    pytest
    pytest backend/tests/unit/
    pytest backend/tests/integration/
"""
