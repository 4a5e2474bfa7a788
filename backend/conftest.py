"""Pytest setup for backend test runs.

This file sits at the backend/ root so it is imported before any test
module: the environment below has to be in place before `app.core.config`
builds its settings object.
"""
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("IDENTITY_TOKEN_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")

from app.core.config import settings


@pytest.fixture(scope="session", autouse=True)
def force_testing_mode():
    """Force TESTING=True early in the test session so imports can read it."""
    settings.TESTING = True


@pytest.fixture(scope="session")
def anyio_backend():
    # Some tests expect 'asyncio' as the anyio backend; provide it here to avoid ScopeMismatch
    return "asyncio"
