"""Tests for the projects API: creation, listing and the project quota."""

from typing import Any

from httpx import AsyncClient


class TestProjectsApi:
    async def test_create_and_list(
        self, api_client: AsyncClient, api_keys: Any, acme_workspace: Any
    ) -> None:
        headers = {"X-API-Key": api_keys.acme}
        response = await api_client.post(
            "/api/v1/projects",
            json={"name": "Support bot", "description": "Tier 1 answers"},
            headers=headers,
        )
        assert response.status_code == 201
        created = response.json()
        assert created["name"] == "Support bot"
        assert created["description"] == "Tier 1 answers"

        listing = await api_client.get("/api/v1/projects", headers=headers)
        assert listing.status_code == 200
        names = {p["name"] for p in listing.json()}
        assert names == {acme_workspace.project.name, "Support bot"}

    async def test_listing_is_tenant_scoped(
        self, api_client: AsyncClient, api_keys: Any
    ) -> None:
        await api_client.post(
            "/api/v1/projects",
            json={"name": "Acme only"},
            headers={"X-API-Key": api_keys.acme},
        )

        listing = await api_client.get(
            "/api/v1/projects", headers={"X-API-Key": api_keys.globex}
        )

        assert listing.status_code == 200
        assert "Acme only" not in {p["name"] for p in listing.json()}

    async def test_blank_name_rejected(
        self, api_client: AsyncClient, api_keys: Any
    ) -> None:
        response = await api_client.post(
            "/api/v1/projects",
            json={"name": ""},
            headers={"X-API-Key": api_keys.acme},
        )
        assert response.status_code == 422

    async def test_free_plan_limit_is_403(
        self, api_client: AsyncClient, api_keys: Any
    ) -> None:
        headers = {"X-API-Key": api_keys.acme}
        for name in ("One", "Two", "Three"):
            response = await api_client.post(
                "/api/v1/projects", json={"name": name}, headers=headers
            )
            assert response.status_code == 201

        response = await api_client.post(
            "/api/v1/projects", json={"name": "Four"}, headers=headers
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Project limit reached for your workspace."
        assert response.json()["reason"] == "quota_exceeded"
