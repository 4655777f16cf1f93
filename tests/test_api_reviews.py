"""
Tests for the review and recommendation HTTP endpoints
"""

import httpx
import pytest
from fastapi import FastAPI

import src.api.api_key_auth as api_key_auth
from src.api.reviews import recommendations_router, router as reviews_router
from src.core.enums import ReviewStatus, ReviewType, UserTier
from tests.conftest import make_coin, make_position


API_KEY = "test-review-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def app(pipeline, monkeypatch):
    monkeypatch.setattr(api_key_auth, "REVIEW_API_KEY", API_KEY)

    application = FastAPI()
    application.include_router(reviews_router, prefix="/api")
    application.include_router(recommendations_router, prefix="/api")
    application.state.review_pipeline = pipeline
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_api_key_required(client):
    assert (await client.get("/api/reviews/logs")).status_code == 401
    assert (await client.get("/api/reviews/logs", headers={"X-API-Key": "wrong"})).status_code == 401
    assert (await client.get("/api/reviews/logs", headers=HEADERS)).status_code == 200


@pytest.mark.asyncio
async def test_pipeline_not_initialized(monkeypatch):
    monkeypatch.setattr(api_key_auth, "REVIEW_API_KEY", API_KEY)
    application = FastAPI()
    application.include_router(reviews_router, prefix="/api")

    transport = httpx.ASGITransport(app=application)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/reviews/schedule", headers=HEADERS)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_trigger_then_read_logs_and_feed(client, pipeline, fake_market):
    fake_market.coins = [make_coin("BTC")]

    response = await client.post("/api/reviews/trigger", headers=HEADERS)
    assert response.status_code == 202
    assert response.json()["review_type"] == ReviewType.MANUAL.value
    await pipeline.controller.wait_idle()

    logs = (await client.get("/api/reviews/logs", headers=HEADERS)).json()
    assert len(logs) == 1
    assert logs[0]["status"] == ReviewStatus.COMPLETED.value
    assert logs[0]["buy_count"] == 3
    assert logs[0]["metadata"]["buy_candidates"] == 3

    feed = (await client.get("/api/recommendations/discovery?strategy=moderate", headers=HEADERS)).json()
    assert [item["symbol"] for item in feed] == ["BTC"]
    assert feed[0]["risk_level"] == "MEDIUM"
    assert len(feed[0]["take_profit_levels"]) == 2

    stats = (await client.get("/api/reviews/stats?days=7", headers=HEADERS)).json()
    assert stats["completed_runs"] == 1
    assert stats["success_rate"] == 100.0

    schedule = (await client.get("/api/reviews/schedule", headers=HEADERS)).json()
    assert schedule["lock_held"] is False
    assert schedule["next_due_at"] is not None
    assert schedule["scheduler_running"] is False


@pytest.mark.asyncio
async def test_trigger_while_running_conflicts(client, pipeline):
    pipeline.controller.state.lock_held = True

    response = await client.post("/api/reviews/trigger?reason=btc_breakout", headers=HEADERS)

    assert response.status_code == 409
    assert await pipeline.audit_log.query() == []


@pytest.mark.asyncio
async def test_on_demand_review_endpoint(client, fake_tiers, fake_portfolios, fake_market):
    fake_tiers.tiers[5] = UserTier.FREE
    fake_portfolios.positions[5] = [make_position(5, "LINK", entry_price=10.0, quantity=20)]
    fake_market.quotes["LINK"] = make_coin("LINK", price=14.0)

    for _ in range(3):
        response = await client.post("/api/recommendations/portfolio/5/review", headers=HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert [r["sell_reason"] for r in body["recommendations"]] == ["profit_target"]
        assert body["recommendations"][0]["unrealized_pnl"] == pytest.approx(80.0)

    denied = await client.post("/api/recommendations/portfolio/5/review", headers=HEADERS)
    assert denied.status_code == 429

    feed = (await client.get("/api/recommendations/portfolio/5", headers=HEADERS)).json()
    assert len(feed) == 1
    assert feed[0]["percent_gain"] == pytest.approx(40.0)
