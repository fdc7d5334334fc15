"""
Adherence & Reward Engine Test Suite
====================================

Test Structure:
- test_tools/: schedule expansion and notification rendering
- test_services/: ledger, state machine, economy, rewards, challenges, shop
- test_actions/: reminder and missed-dose sweeps
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_actions/

    # Run only marked tests
    pytest -m "unit"
    pytest -m "api"
"""
