"""Root conftest for test suite.

Auto-skips integration tests that require a PostgreSQL database.
Run explicitly with: pytest tests/integration -m integration
"""

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested.

    Requested means either `-m integration` or a tests/integration path.
    """
    markexpr = config.getoption("-m", default="")
    explicit_integration = "integration" in markexpr and "not integration" not in markexpr
    running_integration_path = any("tests/integration" in str(arg) for arg in config.args)

    skip_integration = pytest.mark.skip(
        reason="integration tests require PostgreSQL. Run with: pytest tests/integration -m integration"
    )

    for item in items:
        if "integration" in item.keywords and not (
            explicit_integration or running_integration_path
        ):
            item.add_marker(skip_integration)
