"""
Shared pytest fixtures and test utilities for Travel Connect tests.

This module provides:
- Settings pointing at an isolated SQLite file and media dir per test
- An initialized AppContext for service-level tests
- TestClient setup around a fresh app
- Helpers for creating users, sessions and trips
"""
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("LOG_LEVEL", "WARNING")  # Reduce noise, but show warnings

from travel_connect.config import Settings  # noqa: E402
from travel_connect.main import AppContext, create_app  # noqa: E402
from travel_connect.models import Trip, User  # noqa: E402

FRONTEND_URL = "http://frontend.test"

# Smallest valid PNG (1x1 transparent pixel)
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6300010000000500010d0a2db40000000049454e44ae426082"
)


# ─────────────────────────── CONFIG ───────────────────────────

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "data" / "travel_connect.db"),
        media_dir=str(tmp_path / "media"),
        base_url="http://testserver",
        frontend_url=FRONTEND_URL,
        log_level="WARNING",
        max_cover_mb=1,
        default_page_size=20,
        max_page_size=50,
    )


# ─────────────────────────── SERVICE FIXTURES ───────────────────────────

@pytest.fixture
def ctx(settings):
    """Initialized context for calling the service directly, without HTTP."""
    context = AppContext.build(settings)
    context.startup()
    yield context
    context.shutdown()


@pytest.fixture
def service(ctx):
    return ctx.trips


@pytest.fixture
def owner(ctx) -> User:
    return ctx.identity.create_user("olivia", "Olivia Owner")


@pytest.fixture
def collaborator(ctx) -> User:
    return ctx.identity.create_user("carlos", "Carlos Collaborator")


@pytest.fixture
def stranger(ctx) -> User:
    return ctx.identity.create_user("sam", "Sam Stranger")


def make_trip(service, owner: User, **fields: Any) -> Trip:
    """Create a trip with sensible defaults; keyword args override payload fields."""
    payload: Dict[str, Any] = {
        "name": "Lisbon Long Weekend",
        "destination": "Lisbon, Portugal",
        "start_date": "2024-06-01",
        "end_date": "2024-06-10",
        "visibility": "public",
    }
    payload.update(fields)
    return service.create_trip(owner, payload)


@pytest.fixture
def public_trip(service, owner) -> Trip:
    return make_trip(service, owner)


@pytest.fixture
def private_trip(service, owner) -> Trip:
    return make_trip(service, owner, name="Secret Fjords", destination="Bergen, Norway", visibility="private")


# ─────────────────────────── HTTP FIXTURES ───────────────────────────

@pytest.fixture
def client(settings):
    """Function-scoped client around a fresh app with its own database."""
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def create_api_user(client: TestClient, username: str, name: Optional[str] = None):
    """Create a user directly through the identity provider. Returns (user, headers)."""
    identity = client.app.state.ctx.identity
    user = identity.create_user(username, name or username.title())
    token = identity.create_user_session(user.id, device_info="Test")
    return user, {"Authorization": f"Bearer {token}"}


# ─────────────────────────── ASSERTION HELPERS ───────────────────────────

def assert_json_success(response, expected_status: int = 200):
    """Assert JSON response indicates success."""
    assert response.status_code == expected_status, response.text
    data = response.json()
    assert data.get("ok") is True
    return data


def assert_json_error(response, expected_status: int, kind: Optional[str] = None):
    """Assert JSON response indicates error, optionally of a given kind."""
    assert response.status_code == expected_status, response.text
    data = response.json()
    assert data.get("ok") is False
    if kind is not None:
        assert data.get("error") == kind
    return data
