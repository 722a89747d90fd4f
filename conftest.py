"""
Root pytest configuration for the Django project.

Points pytest-django at the project settings before collection. App-specific
fixtures are defined in each app's tests/conftest.py.
"""

import os

import django

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django before tests run."""
    django.setup()
