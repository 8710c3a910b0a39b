"""Pytest fixtures for API tests.

Provides a TestClient whose database dependency is bound to the
in-memory session from the root conftest.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from chatbridge.api.main import app
from chatbridge.api.middleware.auth import reset_rate_limiter
from chatbridge.db.connection import get_db

USER = "user-1"
OTHER_USER = "user-2"


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database dependency.

    Args:
        db_session: Test database session fixture.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    reset_rate_limiter()
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    reset_rate_limiter()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-User-Id": USER}
