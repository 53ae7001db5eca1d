"""
SideEffect Sentinel Test Suite
==============================

This package contains all tests for the SideEffect Sentinel analytics backend.

Test Structure:
- test_actions/: Detector, alert engine, report and orchestrator tests
- test_services/: Repository, text-analysis and analytics facade tests
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_actions/

    # Run with verbose output
    pytest -v

    # Run only marked tests
    pytest -m "api"
"""
