"""Integration tests for the experiment lifecycle against a live database."""

import asyncio
import uuid
from typing import Any

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from uplift.models.db.experiment import Assignment, Variant


def _payload(shop_id: str) -> dict[str, Any]:
    return {
        "shop_id": shop_id,
        "name": f"integ-{uuid.uuid4().hex[:8]}",
        "experiment_type": "discount",
        "variants": [
            {"name": "control", "is_control": True, "traffic_pct": 0.5,
             "value": {"kind": "percent", "percent": 0}},
            {"name": "ten-off", "traffic_pct": 0.5,
             "value": {"kind": "percent", "percent": 10}},
        ],
    }


async def _running_experiment(client: AsyncClient) -> dict[str, Any]:
    shop_id = f"shop-{uuid.uuid4().hex[:6]}"
    response = await client.post("/api/v1/experiments", json=_payload(shop_id))
    assert response.status_code == 201
    experiment = response.json()
    response = await client.post(f"/api/v1/experiments/{experiment['id']}/start")
    assert response.status_code == 200
    return response.json()


async def _variants(
    session_factory: async_sessionmaker[AsyncSession], experiment_id: str
) -> dict[str, Variant]:
    async with session_factory() as session:
        result = await session.execute(
            select(Variant).where(Variant.experiment_id == uuid.UUID(experiment_id))
        )
        return {v.name: v for v in result.scalars()}


@pytest.mark.integration
class TestExperimentLifecycle:
    """End-to-end lifecycle through the HTTP API."""

    @pytest.mark.asyncio(loop_scope="session")
    async def test_create_start_and_list(self, async_client: AsyncClient) -> None:
        experiment = await _running_experiment(async_client)

        assert experiment["status"] == "running"
        assert experiment["variants"][0]["is_control"] is True

        response = await async_client.get(
            "/api/v1/experiments", params={"shop_id": experiment["shop_id"]}
        )
        assert [e["id"] for e in response.json()] == [experiment["id"]]

    @pytest.mark.asyncio(loop_scope="session")
    async def test_counters_follow_assignments_and_conversions(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        experiment = await _running_experiment(async_client)
        assignments = []
        for i in range(40):
            response = await async_client.post(
                "/api/v1/storefront/assign",
                json={"experiment_id": experiment["id"], "visitor_identifier": f"visitor-{i}"},
            )
            assert response.status_code == 200
            assignments.append(response.json())

        converting = assignments[:10]
        for assignment in converting:
            response = await async_client.post(
                "/api/v1/storefront/track",
                json={
                    "assignment_id": assignment["id"],
                    "event_type": "conversion",
                    "event_value": 25.0,
                },
            )
            assert response.status_code == 201

        variants = await _variants(session_factory, experiment["id"])
        assert sum(v.total_visitors for v in variants.values()) == 40
        assert sum(v.total_conversions for v in variants.values()) == 10
        assert sum(v.total_revenue for v in variants.values()) == pytest.approx(250.0)

        response = await async_client.get(f"/api/v1/experiments/{experiment['id']}/results")
        assert response.status_code == 200
        results = response.json()
        assert results["source"] == "counters"
        assert sum(v["visitors"] for v in results["variants"]) == 40

        response = await async_client.post(f"/api/v1/experiments/{experiment['id']}/reconcile")
        assert response.status_code == 200
        reconciled = {v["name"]: v for v in response.json()["variants"]}
        for name, variant in variants.items():
            assert reconciled[name]["total_visitors"] == variant.total_visitors
            assert reconciled[name]["total_conversions"] == variant.total_conversions

    @pytest.mark.asyncio(loop_scope="session")
    async def test_concurrent_assign_is_idempotent(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        experiment = await _running_experiment(async_client)
        body = {"experiment_id": experiment["id"], "visitor_identifier": "racer"}

        responses = await asyncio.gather(
            *(async_client.post("/api/v1/storefront/assign", json=body) for _ in range(8))
        )

        assert {r.status_code for r in responses} == {200}
        persisted = [r.json() for r in responses if r.json()["persisted"]]
        assert len({a["id"] for a in persisted}) == 1
        async with session_factory() as session:
            rows = await session.execute(
                select(Assignment).where(
                    Assignment.experiment_id == uuid.UUID(experiment["id"])
                )
            )
            assert len(rows.scalars().all()) == 1
        variants = await _variants(session_factory, experiment["id"])
        assert sum(v.total_visitors for v in variants.values()) == 1

    @pytest.mark.asyncio(loop_scope="session")
    async def test_rollout_completes_and_rejects_late_events(
        self, async_client: AsyncClient
    ) -> None:
        experiment = await _running_experiment(async_client)
        assignment = (
            await async_client.post(
                "/api/v1/storefront/assign",
                json={"experiment_id": experiment["id"], "visitor_identifier": "late"},
            )
        ).json()
        winner = next(v for v in experiment["variants"] if not v["is_control"])

        response = await async_client.post(
            f"/api/v1/experiments/{experiment['id']}/rollout",
            json={"variant_id": winner["id"]},
        )
        assert response.status_code == 200
        completed = response.json()
        assert completed["status"] == "completed"
        assert completed["winning_variant_id"] == winner["id"]
        assert completed["end_date"] is not None

        response = await async_client.post(
            f"/api/v1/experiments/{experiment['id']}/rollout",
            json={"variant_id": winner["id"]},
        )
        assert response.status_code == 200

        response = await async_client.post(
            "/api/v1/storefront/track",
            json={"assignment_id": assignment["id"], "event_type": "conversion"},
        )
        assert response.status_code == 409

        response = await async_client.post(f"/api/v1/experiments/{experiment['id']}/pause")
        assert response.status_code == 409

    @pytest.mark.asyncio(loop_scope="session")
    async def test_unknown_experiment(self, async_client: AsyncClient) -> None:
        response = await async_client.get(f"/api/v1/experiments/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["kind"] == "NotFound"
