"""Root-level pytest fixtures for all tests.

Provides:
- An in-memory SQLite session with every table created
- A deterministic credential key (no key file is ever written)
- A clean provider-key environment and key cache per test
"""

import base64
import os
from collections.abc import Generator

# The module-level engine in chatbridge.db.connection is built at import
# time; keep it away from the user's data directory.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chatbridge.db.models import Base
from chatbridge.services.user_key_service import reset_key_cache

TEST_KEY = bytes(range(32))

_PROVIDER_ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
    "XAI_API_KEY",
    "OPENROUTER_API_KEY",
    "FAL_API_KEY",
    "FAL_KEY",
    "LUMA_API_KEY",
    "REPLICATE_API_TOKEN",
    "EXA_API_KEY",
    "CHATBRIDGE_API_KEY",
    "CHATBRIDGE_DEFAULT_MODEL",
    "OPENAI_COMPATIBLE_DATA",
    "KEY_ENCRYPTION_SECRET",
    "CHATBRIDGE_CREDENTIAL_KEY_FILE",
    "CHATBRIDGE_PUBLIC_BASE_URL",
    "CHATWOOT_URL",
    "CHATWOOT_ACCOUNT_ID",
    "CHATWOOT_TOKEN",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> Generator[None, None, None]:
    """Pin the credential key and clear process-wide provider keys."""
    for name in _PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHATBRIDGE_CREDENTIAL_KEY", base64.b64encode(TEST_KEY).decode("ascii"))
    reset_key_cache()
    yield
    reset_key_cache()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()
