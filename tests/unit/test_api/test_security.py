"""Security hardening tests: CORS and debug mode."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from prompt_workbench.api.app import app
from prompt_workbench.config import Environment, Settings, settings


@pytest.fixture()
async def bare_client() -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


class TestCORSRestriction:
    async def test_cors_production_restricted(self, bare_client: AsyncClient) -> None:
        """Empty CORS origins (default) → preflight rejected."""
        response = await bare_client.options(
            "/health",
            headers={
                "Origin": "http://evil.com",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert "access-control-allow-origin" not in response.headers


class TestDebugMode:
    def test_debug_false_in_production(self) -> None:
        prod_settings = Settings(environment=Environment.PRODUCTION)
        assert prod_settings.is_dev is False

    def test_app_debug_wired_to_settings(self) -> None:
        assert app.debug is settings.is_dev
