"""Root conftest — shared fixtures for all server tests."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

# Ensure server/ is on sys.path
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:
    sys.path.insert(0, _server_dir)

os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-with-at-least-32-bytes!")
os.environ.setdefault("OPENROUTER_API_KEY", "test-openrouter-key")
os.environ.setdefault("KLUSTER_API_KEY", "test-kluster-key")
os.environ.setdefault("SARVAM_API_KEY", "test-sarvam-key")
os.environ.setdefault("RESPONSE_CACHE_BACKEND", "memory")

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401 — register all models with Base

# Use in-memory SQLite for tests — StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_profile(db):
    from models.user import UserProfile

    profile = UserProfile(external_id="ext-user-1", email="user@example.com")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def make_token(subject: str, **claims) -> str:
    from config import settings

    payload = {"sub": subject, "iat": int(time.time()), "exp": int(time.time()) + 3600, **claims}
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHMS[0])


@pytest.fixture
def auth_token(user_profile):
    return make_token(user_profile.external_id)


@pytest.fixture
def auth_headers(auth_token):
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def session_factory():
    """Open extra sessions on the test database (caller closes them)."""
    return TestSession


@pytest.fixture
def token_factory():
    return make_token
