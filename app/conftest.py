"""
Project-wide pytest configuration.

Tests are auto-marked unit/integration from their filename so a fast subset
can be selected with `pytest -m unit`.
"""

import pytest


def pytest_configure(config):
    """Tune settings for tests."""
    from django.conf import settings

    # Celery tasks run inline without a broker
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.CELERY_TASK_EAGER_PROPAGATES = True


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_paths.py, test_options.py, test_events.py, test_task_tracker.py,
      test_pipeline.py → unit
    - test_hash_store.py, test_ingest.py, test_tasks.py, etc. → integration
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    unit_patterns = [
        "test_paths.py",
        "test_options.py",
        "test_events.py",
        "test_task_tracker.py",
        "test_pipeline.py",
    ]

    for item in items:
        # Skip if test already has a unit/integration marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)
