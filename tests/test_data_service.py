"""
Test suite for the FastAPI data-service API routers.

Tests every endpoint exposed by the data service without network access.
The collector is a real ``CollectorService`` wired to fake sources and a
sleep that parks forever, so background loops exist but never fetch; the
tests drive collection through ``POST /collector/collect/{symbol}``.

Covers:
  - 503 before the collector is injected, health in that state
  - Scanner endpoints (results, per-symbol analysis, history)
  - Collector control (start / restart / stop / start_default / status)
  - Provider breaker inspection and manual reset
  - Risk calculators and the watchlist
  - Service root
"""

import random
from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeSource, never_wake
from options_scanner.core.config import ScannerConfig
from options_scanner.core.store import SqliteStore
from options_scanner.integrations.provider_client import RateLimitedClient
from options_scanner.integrations.sources import DataSourceRouter
from options_scanner.services.data.api.collector import router as collector_router
from options_scanner.services.data.api.dependencies import set_collector
from options_scanner.services.data.api.health import router as health_router
from options_scanner.services.data.api.metrics import PrometheusMiddleware
from options_scanner.services.data.api.metrics import router as metrics_router
from options_scanner.services.data.api.rate_limit import setup_rate_limiting
from options_scanner.services.data.api.risk import router as risk_router
from options_scanner.services.data.api.scanner import router as scanner_router
from options_scanner.services.data.api.watchlist import router as watchlist_router
from options_scanner.services.engine.collector import CollectorService

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _provider_client() -> RateLimitedClient:
    return RateLimitedClient(
        "https://provider.test",
        calls_per_minute=6000,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
    )


def _make_collector(*, store=None, client=None) -> CollectorService:
    config = ScannerConfig(max_initial_delay=0.0, default_tickers=("SPY", "QQQ"))
    return CollectorService(
        config,
        router=DataSourceRouter(FakeSource(name="live"), FakeSource(name="synthetic", price=50.0)),
        client=client,
        store=store,
        persist=False,
        rng=random.Random(3),
        sleep=never_wake,
    )


def _build_test_app(collector) -> FastAPI:
    """Same routers and middleware as the service, with an injected collector."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        set_collector(collector)
        yield
        if collector is not None:
            await collector.shutdown()
        set_collector(None)

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(PrometheusMiddleware)
    setup_rate_limiting(app)
    app.include_router(scanner_router, prefix="/scanner")
    app.include_router(collector_router, prefix="/collector")
    app.include_router(risk_router, prefix="/risk")
    app.include_router(watchlist_router, prefix="/watchlist")
    app.include_router(health_router)
    app.include_router(metrics_router)
    return app


@pytest.fixture()
def client():
    with TestClient(_build_test_app(_make_collector())) as c:
        yield c


@pytest.fixture()
def provider_client():
    return _provider_client()


@pytest.fixture()
def client_with_provider(provider_client):
    collector = _make_collector(client=provider_client)
    with TestClient(_build_test_app(collector)) as c:
        yield c, provider_client


@pytest.fixture()
def client_with_store(tmp_path):
    store = SqliteStore(str(tmp_path / "api.db"))
    with TestClient(_build_test_app(_make_collector(store=store))) as c:
        yield c


@pytest.fixture()
def bare_client():
    with TestClient(_build_test_app(None)) as c:
        yield c


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — no collector
# ═══════════════════════════════════════════════════════════════════════════


class TestWithoutCollector:
    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/scanner/results"),
            ("get", "/scanner/AAPL"),
            ("post", "/collector/start/AAPL"),
            ("get", "/collector/status"),
            ("get", "/watchlist"),
        ],
    )
    def test_503(self, bare_client, method, path):
        resp = getattr(bare_client, method)(path)
        assert resp.status_code == 503
        assert resp.json()["detail"] == "Collector not started yet"

    def test_health_is_degraded(self, bare_client):
        resp = bare_client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "degraded"
        assert body["components"]["collector"]["status"] == "not_initialized"

    def test_metrics_json(self, bare_client):
        body = bare_client.get("/metrics").json()
        assert body["collector_running"] is False
        assert body["tracked_symbols"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — scanner endpoints
# ═══════════════════════════════════════════════════════════════════════════


class TestScannerEndpoints:
    def test_empty_results(self, client):
        body = client.get("/scanner/results").json()
        assert body["results"] == []
        assert body["setupCounts"] == {"bullish": 0, "bearish": 0, "neutral": 0}
        assert body["marketSummary"]["sentiment"] == "neutral"

    def test_collect_then_read(self, client):
        resp = client.post("/collector/collect/aapl")
        assert resp.status_code == 200
        body = resp.json()
        assert body["symbol"] == "AAPL"
        assert body["results"] == {"quote": True, "historical": True, "options": True, "summary": True}
        assert body["analysis"]["symbol"] == "AAPL"

        analysis = client.get("/scanner/AAPL").json()
        assert analysis["price"] == 100.0
        assert analysis["setupType"] in ("bullish", "bearish", "neutral")
        assert set(analysis["keyLevels"]) == {"support", "resistance", "maxPain"}
        assert analysis["recommendation"]["action"] in (
            "Buy calls", "Buy puts", "Sell iron condor", "Monitor"
        )

        results = client.get("/scanner/results").json()
        assert [r["symbol"] for r in results["results"]] == ["AAPL"]
        assert sum(results["setupCounts"].values()) == 1

    def test_results_filter(self, client):
        client.post("/collector/collect/AAPL")
        setup_type = client.get("/scanner/AAPL").json()["setupType"]
        assert len(client.get(f"/scanner/results?setup_type={setup_type}").json()["results"]) == 1
        other = "bearish" if setup_type != "bearish" else "bullish"
        filtered = client.get(f"/scanner/results?setup_type={other}").json()
        assert filtered["results"] == []
        assert sum(filtered["setupCounts"].values()) == 1

    def test_invalid_setup_type(self, client):
        assert client.get("/scanner/results?setup_type=sideways").status_code == 422

    def test_unknown_symbol(self, client):
        resp = client.get("/scanner/ZZZZ")
        assert resp.status_code == 404
        assert "ZZZZ" in resp.json()["detail"]

    def test_history_without_store(self, client):
        body = client.get("/scanner/AAPL/history").json()
        assert body == {"symbol": "AAPL", "setups": [], "sentiment": [], "summaries": []}

    def test_history_with_store(self, client_with_store):
        client_with_store.post("/collector/collect/AAPL")
        body = client_with_store.get("/scanner/aapl/history?days=30").json()
        assert body["symbol"] == "AAPL"
        assert len(body["setups"]) >= 1
        assert body["setups"][0]["symbol"] == "AAPL"
        assert len(body["sentiment"]) >= 1

    def test_history_days_validated(self, client):
        assert client.get("/scanner/AAPL/history?days=0").status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — collector control
# ═══════════════════════════════════════════════════════════════════════════


class TestCollectorControl:
    def test_start_restart_stop(self, client):
        resp = client.post("/collector/start/tsla")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "success",
            "symbol": "TSLA",
            "message": "Started data collection for TSLA",
        }
        again = client.post("/collector/start/TSLA").json()
        assert again["message"] == "Restarted data collection for TSLA"

        status = client.get("/collector/status").json()
        assert list(status["symbols"]) == ["TSLA"]
        assert status["symbols"]["TSLA"]["quote_status"] == "not_started"
        assert status["active_source"] == "live"

        stopped = client.post("/collector/stop/TSLA")
        assert stopped.status_code == 200
        assert client.get("/collector/status").json()["symbols"] == {}

    def test_stop_untracked(self, client):
        resp = client.post("/collector/stop/TSLA")
        assert resp.status_code == 404

    @pytest.mark.parametrize("symbol", ["1ABC", "TOOLONGSYMBOL", "A$B"])
    def test_invalid_symbol(self, client, symbol):
        assert client.post(f"/collector/start/{symbol}").status_code == 422

    def test_start_default(self, client):
        body = client.post("/collector/start_default").json()
        assert body == {"status": "success", "symbols": ["SPY", "QQQ"]}
        assert sorted(client.get("/collector/status").json()["symbols"]) == ["QQQ", "SPY"]

    def test_metrics_reflect_tracking(self, client):
        client.post("/collector/start/AAPL")
        body = client.get("/metrics").json()
        assert body["collector_running"] is True
        assert body["tracked_symbols"] == 1
        assert body["symbols"] == ["AAPL"]
        assert "keys" not in body["cache"]


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — provider and health
# ═══════════════════════════════════════════════════════════════════════════


class TestProvider:
    def test_no_live_provider(self, client):
        assert client.get("/collector/provider").json() == {"configured": False}
        assert client.post("/collector/provider/reset").status_code == 404

    def test_health_ok_with_closed_breaker(self, client_with_provider):
        c, _ = client_with_provider
        body = c.get("/health").json()
        assert body["status"] == "ok"
        assert body["components"]["provider"]["state"] == "closed"
        assert body["components"]["collector"]["status"] == "running"

    def test_tripped_breaker_degrades_health_until_reset(self, client_with_provider):
        c, provider = client_with_provider
        provider.breaker.trip("http 401")

        state = c.get("/collector/provider").json()
        assert state["configured"] is True
        assert state["degraded"] is True
        assert state["last_reason"] == "http 401"

        health = c.get("/health").json()
        assert health["status"] == "degraded"
        assert health["components"]["provider"]["status"] == "degraded"

        reset = c.post("/collector/provider/reset").json()
        assert reset["status"] == "success"
        assert reset["provider"]["state"] == "closed"
        assert c.get("/health").json()["status"] == "ok"


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — risk calculators
# ═══════════════════════════════════════════════════════════════════════════


class TestRiskEndpoints:
    def test_position_size(self, bare_client):
        resp = bare_client.post(
            "/risk/position-size",
            json={"account_size": 10_000, "risk_percentage": 2, "option_premium": 2.5, "iv": 70},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["contractsToTrade"] == 64
        assert body["ivAdjustment"] == "Applied High IV reduction"

    def test_risk_reward(self, bare_client):
        resp = bare_client.post(
            "/risk/reward",
            json={"entry_price": 100, "target_price": 110, "stop_loss_price": 95,
                  "position_type": "long", "quantity": 10},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["riskRewardRatio"] == 2.0
        assert body["dollarRisk"] == 50.0
        assert body["tradeQuality"] == "fair"

    def test_call_without_strike_is_400(self, bare_client):
        resp = bare_client.post(
            "/risk/reward",
            json={"entry_price": 100, "target_price": 110, "stop_loss_price": 95,
                  "position_type": "call", "option_premium": 3},
        )
        assert resp.status_code == 400
        assert "strike" in resp.json()["detail"]

    def test_unknown_position_type_is_422(self, bare_client):
        resp = bare_client.post(
            "/risk/reward",
            json={"entry_price": 100, "target_price": 110, "stop_loss_price": 95,
                  "position_type": "straddle"},
        )
        assert resp.status_code == 422

    def test_stop_loss(self, bare_client):
        resp = bare_client.post(
            "/risk/stop-loss",
            json={"entry_price": 100, "trade_type": "put", "stop_type": "atr", "atr_value": 2},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["stopLossPrice"] == 105.0
        assert body["confidenceLevel"] == "high"

    def test_stop_loss_missing_level_is_400(self, bare_client):
        resp = bare_client.post(
            "/risk/stop-loss",
            json={"entry_price": 100, "trade_type": "call", "stop_type": "technical"},
        )
        assert resp.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — watchlist
# ═══════════════════════════════════════════════════════════════════════════


class TestWatchlistEndpoints:
    def test_disabled_without_persistence(self, client):
        resp = client.get("/watchlist")
        assert resp.status_code == 503
        assert resp.json()["detail"] == "Persistence is disabled"

    def test_add_list_remove(self, client_with_store):
        c = client_with_store
        assert c.get("/watchlist").json() == []

        added = c.post(
            "/watchlist",
            json={"symbol": "aapl", "setup_type": "bullish", "price": 200, "entry_target": 198,
                  "stop_loss": 190.5},
        ).json()
        assert added["success"] is True
        assert added["message"] == "Added AAPL to watchlist"

        items = c.get("/watchlist").json()
        assert len(items) == 1
        assert items[0]["symbol"] == "AAPL"
        assert items[0]["stop_loss"] == "190.5"
        assert items[0]["target_price"] == pytest.approx(210.0)

        assert c.delete("/watchlist/aapl").json()["success"] is True
        assert c.delete("/watchlist/AAPL").status_code == 404

    def test_price_follows_collection(self, client_with_store):
        c = client_with_store
        c.post("/watchlist", json={"symbol": "AAPL", "setup_type": "neutral",
                                   "price": 1.0, "entry_target": 1.0})
        c.post("/collector/collect/AAPL")
        # Latest stored close, not the price given when the entry was added.
        assert c.get("/watchlist").json()[0]["price"] != 1.0

    def test_invalid_setup_type_is_422(self, client_with_store):
        resp = client_with_store.post(
            "/watchlist",
            json={"symbol": "AAPL", "setup_type": "sideways", "price": 1, "entry_target": 1},
        )
        assert resp.status_code == 422


class TestServiceRoot:
    def test_root_lists_endpoints(self):
        from options_scanner.services.data.main import app

        # No context manager: the lifespan (and its real collector) never starts.
        resp = TestClient(app).get("/")
        assert resp.status_code == 200
        body = resp.json()
        assert body["service"] == "options-scanner-data-service"
        assert body["endpoints"]["results"] == "/scanner/results"
        assert body["endpoints"]["watchlist"] == "/watchlist"

