"""Pytest fixtures for integration tests.

The application runs in-process over httpx's ASGI transport, backed by the
MemoryStorage from the top-level conftest. ASGITransport does not run the
lifespan, so the administrator account is seeded here.
"""

from typing import AsyncGenerator, Dict

import httpx
import pytest
from fastapi import FastAPI

from school_election.config import settings
from school_election.main import create_app, limiter
from school_election.storage import MemoryStorage


@pytest.fixture
async def app(storage: MemoryStorage) -> FastAPI:
    """Application bound to the test storage, with a fresh rate limit window."""
    application = create_app(storage)
    limiter.reset()
    await application.state.service.ensure_admin()
    return application


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client for making API requests.

    Returns an async httpx client wired directly to the application.
    """
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver",
                                 timeout=10.0) as client:
        yield client


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def admin_headers(api_client: httpx.AsyncClient) -> Dict[str, str]:
    """Authorization headers for the seeded administrator."""
    response = await api_client.post("/api/login", json={
        "reference_number": settings.ADMIN_REFERENCE_NUMBER,
        "student_name": settings.ADMIN_NAME
    })
    assert response.status_code == 200
    return bearer(response.json()["access_token"])


@pytest.fixture
def register_student(api_client: httpx.AsyncClient):
    """Factory that registers a student and returns (user, headers)."""

    async def _register(reference_number: str = "2025-00123",
                        student_name: str = "Juan Dela Cruz"):
        response = await api_client.post("/api/register", json={
            "reference_number": reference_number,
            "student_name": student_name
        })
        assert response.status_code == 201, response.text
        data = response.json()
        return data["user"], bearer(data["access_token"])

    return _register


@pytest.fixture
async def student_headers(register_student) -> Dict[str, str]:
    """Authorization headers for a freshly registered student."""
    _, headers = await register_student()
    return headers
