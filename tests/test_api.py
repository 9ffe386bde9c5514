"""Integration tests for the reconciliation API endpoints.

Uses InMemoryLedgerRepository (via the ``ledger`` fixture) attached to
``app.state.ledger`` and an httpx AsyncClient over ASGITransport. The
lifespan does not run under ASGITransport, so no database is touched.
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.dealops.config import Settings
from src.dealops.ledger.services import LedgerServices
from src.dealops.main import create_app

ORIGIN = str(uuid.uuid4())
TARGET_ORIGIN = str(uuid.uuid4())
SALE = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def _make_app(ledger: LedgerServices | None):
    app = create_app()
    app.state.ledger = ledger
    return app


@pytest_asyncio.fixture
async def client(ledger):
    """AsyncClient over the app with in-memory ledger services."""
    app = _make_app(ledger)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Infrastructure ──────────────────────────────────────────────────────────


class TestInfrastructure:
    @pytest.mark.asyncio
    async def test_health(self, client):
        """GET /health -> 200 with success envelope."""
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_services_not_initialized_returns_503(self):
        """Endpoints -> 503 when app.state.ledger is missing."""
        transport = ASGITransport(app=_make_app(None))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/api/v1/replication/rules")
        assert resp.status_code == 503
        assert resp.json() == {"success": False, "error": "Ledger services not initialized"}

    @pytest.mark.asyncio
    async def test_cors_preflight(self, client):
        resp = await client.options(
            "/api/v1/replication/rules",
            headers={
                "Origin": "https://crm.example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_unhandled_error_returns_500_envelope(self, client, ledger):
        ledger.replication_engine.list_rules = AsyncMock(side_effect=RuntimeError("kaboom"))

        resp = await client.get("/api/v1/replication/rules")

        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "kaboom"}

    @pytest.mark.asyncio
    async def test_unknown_route_404_envelope(self, client):
        resp = await client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["success"] is False


# ── Orphans ─────────────────────────────────────────────────────────────────


class TestOrphanEndpoints:
    @pytest.mark.asyncio
    async def test_promote(self, client, repo):
        """POST /transactions/orphans/promote -> 200 with report."""
        tx = repo.seed_transaction(
            "newsale-9", SALE, product_category="course", product_price=100.0
        )

        resp = await client.post(
            "/api/v1/transactions/orphans/promote",
            json={
                "start_date": (SALE - timedelta(days=1)).isoformat(),
                "end_date": (SALE + timedelta(days=1)).isoformat(),
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["summary"]["total_promoted"] == 1
        assert body["summary"]["total_net_value_added"] == 88.0
        assert body["promoted_transactions"][0]["transaction_id"] == tx.id
        assert repo.transactions[tx.id].count_in_dashboard is True

    @pytest.mark.asyncio
    async def test_promote_without_body_uses_defaults(self, client):
        resp = await client.post("/api/v1/transactions/orphans/promote")
        assert resp.status_code == 200
        assert resp.json()["net_value_factor"] == 0.88

    @pytest.mark.asyncio
    async def test_negative_factor_is_400(self, client):
        resp = await client.post(
            "/api/v1/transactions/orphans/promote", json={"net_value_factor": -1}
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert "net_value_factor" in body["error"]

    @pytest.mark.asyncio
    async def test_inverted_window_is_400(self, client):
        resp = await client.post(
            "/api/v1/transactions/orphans/promote",
            json={"start_date": SALE.isoformat(), "end_date": (SALE - timedelta(days=1)).isoformat()},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "start_date must not be after end_date"


# ── Duplicates ──────────────────────────────────────────────────────────────


class TestDuplicateEndpoints:
    async def _seed(self, repo):
        t0 = datetime.now(timezone.utc) - timedelta(hours=1)
        repo.seed_stage_change("d1", "Lead", "Qualified", t0)
        return repo.seed_stage_change("d1", "Lead", "Qualified", t0 + timedelta(seconds=5))

    @pytest.mark.asyncio
    async def test_detect_list_and_stats(self, client, repo):
        dup = await self._seed(repo)

        detect = await client.post("/api/v1/activities/duplicates/detect", json={"days_back": 3})
        listing = await client.get("/api/v1/activities/duplicates", params={"status": "pending"})
        stats = await client.get("/api/v1/activities/duplicates/stats")

        assert detect.status_code == 200
        assert detect.json()["stats"]["duplicates_found"] == 1
        assert [d["duplicate_activity_id"] for d in listing.json()["duplicates"]] == [dup.id]
        assert stats.json() == {
            "success": True,
            "stats": {"pending": 1, "ignored": 0, "deleted": 0, "total": 1},
        }

    @pytest.mark.asyncio
    async def test_review_records_actor(self, client, repo):
        dup = await self._seed(repo)
        await client.post("/api/v1/activities/duplicates/detect")
        record_id = next(iter(repo.duplicates))

        resp = await client.patch(
            f"/api/v1/activities/duplicates/{record_id}",
            json={"status": "deleted"},
            headers={"X-User-Email": "Reviewer@X.com"},
        )

        assert resp.status_code == 200
        assert resp.json()["duplicate"]["status"] == "deleted"
        assert resp.json()["duplicate"]["reviewed_by"] == "reviewer@x.com"
        assert dup.id not in repo.activities

    @pytest.mark.asyncio
    async def test_review_unknown_is_404(self, client):
        resp = await client.patch(
            "/api/v1/activities/duplicates/missing", json={"status": "ignored"}
        )
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_invalid_status_filter_is_400(self, client):
        resp = await client.get("/api/v1/activities/duplicates", params={"status": "bogus"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_ignore_pending(self, client, repo):
        await self._seed(repo)
        await client.post("/api/v1/activities/duplicates/detect")

        resp = await client.post("/api/v1/activities/duplicates/ignore-pending")

        assert resp.json() == {"success": True, "updated": 1}


# ── Replication & Deals ─────────────────────────────────────────────────────


class TestReplicationEndpoints:
    async def _pipeline(self, client, repo):
        won = repo.seed_stage(ORIGIN, "Won")
        lead = repo.seed_stage(ORIGIN, "Lead")
        onboarding = repo.seed_stage(TARGET_ORIGIN, "Onboarding")
        resp = await client.post(
            "/api/v1/replication/rules",
            json={
                "name": "Won to onboarding",
                "source_origin_id": ORIGIN,
                "source_stage_id": won.id,
                "target_origin_id": TARGET_ORIGIN,
                "target_stage_id": onboarding.id,
            },
        )
        assert resp.status_code == 201
        return won, lead

    @pytest.mark.asyncio
    async def test_stage_move_then_queue_drain(self, client, repo):
        """PATCH /deals/{id}/stage enqueues; POST /replication/process drains."""
        won, lead = await self._pipeline(client, repo)
        deal = repo.seed_deal(origin_id=ORIGIN, stage_id=lead.id)

        moved = await client.patch(f"/api/v1/deals/{deal.id}/stage", json={"stage_id": won.id})
        processed = await client.post("/api/v1/replication/process", json={"process_queue": True})

        assert moved.status_code == 200
        assert moved.json()["deal"]["stage_id"] == won.id
        body = processed.json()
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["results"][0]["replications"] == 1

    @pytest.mark.asyncio
    async def test_direct_deal_replication(self, client, repo):
        won, _ = await self._pipeline(client, repo)
        deal = repo.seed_deal(origin_id=ORIGIN, stage_id=won.id)

        resp = await client.post("/api/v1/replication/process", json={"deal_id": deal.id})

        assert resp.json()["results"][0]["replications"] == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, client):
        resp = await client.post("/api/v1/replication/process", json={"process_queue": True})
        assert resp.json() == {
            "success": True,
            "message": "No items to process",
            "processed": 0,
            "results": [],
        }

    @pytest.mark.asyncio
    async def test_process_without_target_is_400(self, client):
        resp = await client.post("/api/v1/replication/process", json={})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Provide deal_id or process_queue"}

    @pytest.mark.asyncio
    async def test_unknown_deal_is_404(self, client):
        resp = await client.post("/api/v1/replication/process", json={"deal_id": "missing"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Deal not found: missing"

    @pytest.mark.asyncio
    async def test_list_rules(self, client, repo):
        await self._pipeline(client, repo)
        resp = await client.get("/api/v1/replication/rules")
        assert [r["name"] for r in resp.json()["rules"]] == ["Won to onboarding"]

    @pytest.mark.asyncio
    async def test_stage_move_without_body_is_400(self, client, repo):
        deal = repo.seed_deal(origin_id=ORIGIN)
        resp = await client.patch(f"/api/v1/deals/{deal.id}/stage")
        assert resp.status_code == 400
        assert resp.json()["success"] is False


# ── Distribution ────────────────────────────────────────────────────────────


class TestDistributionEndpoint:
    @pytest.mark.asyncio
    async def test_batch_distribution(self, client, repo):
        for i in range(3):
            repo.seed_deal(name=f"Lead {i}", origin_id=ORIGIN)

        resp = await client.post(
            "/api/v1/distribution/batch",
            json={
                "origin_id": ORIGIN,
                "roster": [
                    {"identifier": "a@x.com", "name": "Alice", "quota": 2},
                    {"identifier": "b@x.com", "name": "Bruno", "quota": 1},
                ],
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["updated"] == 3
        assert {d["email"]: d["assigned"] for d in body["distribution"]} == {
            "a@x.com": 2,
            "b@x.com": 1,
        }

    @pytest.mark.asyncio
    async def test_missing_origin_is_400(self, client):
        resp = await client.post("/api/v1/distribution/batch")
        assert resp.status_code == 400


# ── Imports ─────────────────────────────────────────────────────────────────


class TestImportEndpoints:
    @pytest.mark.asyncio
    async def test_small_file_imported_inline(self, client, repo):
        content = b"id,name,email\n1,Deal,ana@x.com\n2,,\n"

        resp = await client.post(
            "/api/v1/imports/deals",
            files={"file": ("deals.csv", content, "text/csv")},
            data={"origin_id": ORIGIN},
        )

        assert resp.status_code == 200
        stats = resp.json()["stats"]
        assert resp.json()["message"] == "Import completed"
        assert stats["imported"] == 1
        assert stats["errors"] == 1
        assert stats["errorDetails"][0]["error"] == "Missing required field: name"
        assert len(repo.deals) == 1

    @pytest.mark.asyncio
    async def test_empty_file_is_400(self, client):
        resp = await client.post(
            "/api/v1/imports/deals", files={"file": ("deals.csv", b"", "text/csv")}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_large_file_becomes_job(self, repo, tmp_path):
        settings = Settings(
            _env_file=None,
            IMPORT_STORAGE_DIR=str(tmp_path),
            IMPORT_ASYNC_THRESHOLD_BYTES=10,
            IMPORT_CHUNK_DELAY_SECONDS=0,
        )
        ledger = LedgerServices(repo, settings, rng=random.Random(1))
        transport = ASGITransport(app=_make_app(ledger))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            queued = await ac.post(
                "/api/v1/imports/deals",
                files={"file": ("big.csv", b"id,name\n1,Deal one\n2,Deal two\n", "text/csv")},
                data={"owner_email": "sdr@x.com"},
            )
            job_id = queued.json()["job"]["id"]
            processed = await ac.post("/api/v1/imports/jobs/process")
            fetched = await ac.get(f"/api/v1/imports/jobs/{job_id}")
            idle = await ac.post("/api/v1/imports/jobs/process")
            missing = await ac.get("/api/v1/imports/jobs/nope")

        assert queued.status_code == 202
        assert queued.json()["job"]["status"] == "pending"
        assert processed.json()["is_complete"] is True
        assert fetched.json()["job"]["status"] == "completed"
        assert fetched.json()["job"]["total_processed"] == 2
        assert idle.json()["message"] == "No pending import jobs"
        assert missing.status_code == 404
        assert {d.owner_id for d in repo.deals.values()} == {"sdr@x.com"}
