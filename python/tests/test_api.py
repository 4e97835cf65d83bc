"""
API endpoint tests for the FastAPI Ownership Screening API

Uses FastAPI TestClient (and one httpx.AsyncClient test) against real
engine and pipeline objects with in-memory state; no network access.
"""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from httpx import AsyncClient, ASGITransport

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from graph_cache import InMemoryCacheStore
from ownership import EdgeSource, RestrictedPartyEntry, build_edge
from aggregator import aggregate
from pipeline import DiscoveryError, DiscoveryPipeline
from restricted_list import RestrictedPartyList
from screener import RiskScreeningEngine


ENTRIES = [
    RestrictedPartyEntry(name="ZTE Corporation", aliases=("ZTE",), listing_reason="Entity List"),
    RestrictedPartyEntry(name="Huawei Technologies Co., Ltd.", aliases=("Huawei",)),
]


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def restricted():
    return RestrictedPartyList(ENTRIES)


@pytest.fixture
def pipeline(config):
    pipeline = DiscoveryPipeline(config, connectors=[], cache_store=InMemoryCacheStore(), audit=MagicMock(**{'set_run_context.return_value': 'RUN-test'}))
    pipeline.graph_store.install_artifact(aggregate([
        build_edge("Huawei Technologies Co., Ltd.", "Shanghai Huawei Device Co., Ltd.", 0.9,
                   EdgeSource.PATTERN, evidence=["name contains Huawei"]),
        build_edge("Shanghai Huawei Device Co., Ltd.", "SH Device Components Ltd", 0.8,
                   EdgeSource.WIKIDATA, evidence=["owned by"]),
    ]))
    return pipeline


@pytest.fixture
def engine(restricted, pipeline, config):
    engine = RiskScreeningEngine(restricted, pipeline.graph_store, config, audit=MagicMock())
    yield engine
    engine.close()


@pytest.fixture
def client(engine, pipeline, restricted, config):
    """Create test client with the server globals patched."""
    from api import server
    from fastapi.testclient import TestClient

    with patch.object(server, '_engine', engine), \
            patch.object(server, '_pipeline', pipeline), \
            patch.object(server, '_restricted_list', restricted), \
            patch.object(server, '_config', config), \
            patch.object(server, '_startup_time', datetime.now(timezone.utc)), \
            patch.object(server, 'API_KEY', ''):
        yield TestClient(server.app)


# ============================================
# SCREENING
# ============================================

class TestScreening:
    """Tests for POST /api/v1/screen."""

    def test_direct_hit(self, client):
        response = client.post("/api/v1/screen", json={"supplier_name": "ZTE Corporation"})
        assert response.status_code == 200
        data = response.json()
        assert data["risk_score"] == 10.0
        assert data["risk_level"] == "critical"
        assert data["is_hit"] is True
        assert data["matches"][0]["match_type"] == "exact"
        assert data["matches"][0]["listing_reason"] == "Entity List"
        assert data["processing_time_ms"] >= 0

    def test_indirect_hit(self, client):
        response = client.post("/api/v1/screen", json={"supplier_name": "Shanghai Huawei Device Co., Ltd.",
                                                       "country_hint": "CN"})
        data = response.json()
        assert data["risk_level"] == "high"
        assert data["matches"][0]["match_type"] == "indirect"
        assert data["matches"][0]["path"] == ["Shanghai Huawei Device Co., Ltd.",
                                              "Huawei Technologies Co., Ltd."]
        assert data["possibly_incomplete"] is False

    def test_clear(self, client):
        data = client.post("/api/v1/screen", json={"supplier_name": "Globex Industrial Supplies"}).json()
        assert data["risk_level"] == "clear"
        assert data["match_count"] == 0

    def test_missing_name(self, client):
        assert client.post("/api/v1/screen", json={}).status_code == 422

    def test_blank_name(self, client):
        assert client.post("/api/v1/screen", json={"supplier_name": "   "}).status_code == 422

    def test_name_too_long(self, client):
        assert client.post("/api/v1/screen", json={"supplier_name": "x" * 501}).status_code == 422

    def test_control_character(self, client):
        response = client.post("/api/v1/screen", json={"supplier_name": "ZTE\u0007Corp"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "CONTROL_CHARACTER"
        assert response.json()["error"]["field"] == "supplier_name"

    def test_list_unavailable_returns_503(self, client, engine):
        engine.restricted_list = RestrictedPartyList()
        response = client.post("/api/v1/screen", json={"supplier_name": "ZTE Corporation"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "RESTRICTED_LIST_UNAVAILABLE"

    def test_engine_not_initialized(self, client):
        from api import server
        with patch.object(server, '_engine', None):
            response = client.post("/api/v1/screen", json={"supplier_name": "ZTE"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "HTTP_503"


class TestBatchScreening:
    """Tests for POST /api/v1/screen/batch."""

    def test_portfolio_summary(self, client):
        response = client.post("/api/v1/screen/batch", json={"suppliers": [
            {"supplier_name": "ZTE Corporation"},
            {"supplier_name": "Shanghai Huawei Device Co., Ltd.", "country_hint": "CN"},
            {"supplier_name": "Globex Industrial Supplies"},
            {"supplier_name": "ZTE\u0007Corp"},
        ]})
        assert response.status_code == 200
        data = response.json()
        assert [r["risk_level"] for r in data["results"]] == ["critical", "high", "clear"]
        assert data["summary"]["total"] == 3
        assert data["summary"]["overall_level"] == "critical"
        assert data["summary"]["counts"]["high"] == 1
        assert data["summary"]["flagged"] == 2
        assert data["rejected"][0]["row"] == 4
        assert data["rejected"][0]["code"] == "CONTROL_CHARACTER"
        assert data["processing_time_ms"] >= 0

    def test_empty_batch(self, client):
        assert client.post("/api/v1/screen/batch", json={"suppliers": []}).status_code == 422

    def test_list_unavailable_returns_503(self, client, engine):
        engine.restricted_list = RestrictedPartyList()
        response = client.post("/api/v1/screen/batch", json={"suppliers": [{"supplier_name": "Acme"}]})
        assert response.status_code == 503


# ============================================
# DISCOVERY
# ============================================

class TestDiscovery:
    """Tests for the discovery endpoints."""

    def test_run_installs_graph(self, client, pipeline):
        response = client.post("/api/v1/discovery/run", json={"companies": [
            {"name": "Acme Technologies Inc.", "country": "US"},
            {"name": "Acme Technologies Subsidiary LLC", "country": "US"},
        ]})
        assert response.status_code == 200
        data = response.json()
        assert data["installed"] is True
        assert data["entities_total"] == 2
        assert data["coverage_percent"] == 100.0
        assert pipeline.graph_store.current().has_node("Acme Technologies Subsidiary LLC")

    def test_run_requires_companies(self, client):
        assert client.post("/api/v1/discovery/run", json={"companies": []}).status_code == 422

    def test_all_connectors_failed(self, client):
        from api import server
        failing = MagicMock()
        failing.run.side_effect = DiscoveryError("All 3 connector calls failed")
        with patch.object(server, '_pipeline', failing):
            response = client.post("/api/v1/discovery/run", json={"companies": [{"name": "Acme"}]})
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "DISCOVERY_FAILED"

    def test_cancel_when_idle(self, client, pipeline):
        response = client.post("/api/v1/discovery/cancel")
        assert response.json() == {"cancelled": False}
        assert not pipeline.running


# ============================================
# GRAPH
# ============================================

class TestGraph:
    """Tests for GET /api/v1/graph/{name}."""

    def test_neighbourhood(self, client):
        response = client.get("/api/v1/graph/Shanghai Huawei Device Co., Ltd.")
        assert response.status_code == 200
        data = response.json()
        assert data["found"] is True
        assert [e["parent"] for e in data["parents"]] == ["Huawei Technologies Co., Ltd."]
        assert [e["subsidiary"] for e in data["subsidiaries"]] == ["SH Device Components Ltd"]
        assert {n["name"] for n in data["reachable"]} == {"Huawei Technologies Co., Ltd.",
                                                          "SH Device Components Ltd"}

    def test_depth_limits_reach(self, client):
        data = client.get("/api/v1/graph/SH Device Components Ltd", params={"depth": 1}).json()
        assert [n["name"] for n in data["reachable"]] == ["Shanghai Huawei Device Co., Ltd."]

    def test_unknown_company(self, client):
        data = client.get("/api/v1/graph/Globex").json()
        assert data["found"] is False
        assert data["reachable"] == []

    def test_depth_out_of_range(self, client):
        assert client.get("/api/v1/graph/Globex", params={"depth": 9}).status_code == 422


# ============================================
# LIST AND HEALTH
# ============================================

class TestListAndHealth:
    """Tests for list reload and health."""

    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["list_loaded"] is True
        assert data["entries_loaded"] == 2
        assert data["graph"]["edges"] == 2
        assert data["cache_backend"] == "memory"
        assert data["algorithm_version"] == "1.0.0"
        assert data["uptime_seconds"] >= 0

    def test_health_degraded_without_list(self, client):
        from api import server
        with patch.object(server, '_restricted_list', RestrictedPartyList()):
            data = client.get("/api/v1/health").json()
        assert data["status"] == "degraded"
        assert data["list_loaded"] is False

    def test_reload(self, client, tmp_path, restricted):
        from api import server
        list_file = tmp_path / "entries.json"
        list_file.write_text(json.dumps([{"name": "Hikvision", "listing_reason": "Entity List"}]),
                             encoding="utf-8")
        with patch.object(server, 'RESTRICTED_LIST_PATH', str(list_file)):
            response = client.post("/api/v1/list/reload")
        assert response.json() == {"entries_loaded": 1}
        assert [e.name for e in restricted.entries()] == ["Hikvision"]

    def test_reload_missing_file_keeps_list(self, client, tmp_path, restricted):
        from api import server
        with patch.object(server, 'RESTRICTED_LIST_PATH', str(tmp_path / "nope.json")):
            response = client.post("/api/v1/list/reload")
        assert response.status_code == 503
        assert len(restricted) == 2


# ============================================
# SECURITY AND MIDDLEWARE
# ============================================

class TestSecurity:
    """Tests for API key handling and response headers."""

    def test_missing_api_key(self, client):
        from api import server
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"supplier_name": "ZTE"})
        assert response.status_code == 401

    def test_wrong_api_key(self, client):
        from api import server
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"supplier_name": "ZTE"},
                                   headers={"X-API-Key": "guess"})
        assert response.status_code == 403

    def test_valid_api_key(self, client):
        from api import server
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"supplier_name": "ZTE"},
                                   headers={"X-API-Key": "secret"})
        assert response.status_code == 200

    def test_health_needs_no_key(self, client):
        from api import server
        with patch.object(server, 'API_KEY', 'secret'):
            assert client.get("/api/v1/health").status_code == 200

    def test_response_headers(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Processing-Time-MS" in response.headers

    def test_cors_headers_present(self, client):
        response = client.options("/api/v1/screen", headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
        })
        assert response.headers.get("access-control-allow-origin") == "http://localhost:3000"


@pytest.mark.asyncio
async def test_screen_async_client(engine, pipeline, restricted, config):
    """Screening through the ASGI transport."""
    from api import server

    with patch.object(server, '_engine', engine), \
            patch.object(server, '_pipeline', pipeline), \
            patch.object(server, '_restricted_list', restricted), \
            patch.object(server, '_config', config), \
            patch.object(server, 'API_KEY', ''):
        async with AsyncClient(transport=ASGITransport(app=server.app), base_url="http://test") as ac:
            response = await ac.post("/api/v1/screen", json={"supplier_name": "Huawei"})
    assert response.status_code == 200
    assert response.json()["risk_level"] == "critical"


class TestMetrics:
    """Tests for the metrics endpoints."""

    def test_operation_metrics_after_scan(self, client):
        client.post("/api/v1/screen", json={"supplier_name": "ZTE Corporation"})
        data = client.get("/api/v1/metrics").json()
        assert data["operations"]["screening.scan"]["count"] >= 1

    def test_prometheus_exposition(self, client):
        client.post("/api/v1/screen", json={"supplier_name": "ZTE Corporation"})
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "ownership_scans_total" in response.text

    def test_health_reports_database(self, client, config):
        from api import server
        from database import DatabaseCacheStore, create_test_provider

        provider = create_test_provider()
        db_pipeline = DiscoveryPipeline(config, connectors=[], cache_store=DatabaseCacheStore(provider),
                                        audit=MagicMock())
        try:
            with patch.object(server, '_pipeline', db_pipeline):
                data = client.get("/api/v1/health").json()
        finally:
            provider.close()
        assert data["database_ok"] is True
