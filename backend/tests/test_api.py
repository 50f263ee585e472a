"""API route tests. Run against an in-process container with static evidence sources; no Redis needed."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import build_container
from notifications.config import QueueSettings
from notifications.queue import NotificationQueue
from notifications.transport import LoggingBotTransport
from shared.config import BotSettings, Environment, Settings
from verifier.config import VerifierSettings
from verifier.sources import StaticChainVerifier, VerifierRegistry

T0 = 1_700_000_000.0


def _registry() -> VerifierRegistry:
    return VerifierRegistry({
        "pushups": [
            StaticChainVerifier("celo", {"0xAlice": 60}, weight=0.5, observed_at=T0),
            StaticChainVerifier("base", {"0xAlice": 40}, weight=1.0, observed_at=T0 + 1),
        ],
    })


def _container(settings: Settings, bot: BotSettings | None = None):
    return build_container(
        settings=settings,
        bot_settings=bot or BotSettings(),
        verifier_settings=VerifierSettings(),
        registry=_registry(),
        queue=NotificationQueue(QueueSettings()),
        transport=LoggingBotTransport(),
    )


def _client(environment: Environment = Environment.DEV, bot: BotSettings | None = None) -> TestClient:
    container = _container(Settings(environment=environment), bot)
    return TestClient(create_app(container, use_lifespan=False))


@pytest.fixture
def client() -> TestClient:
    """Test client with lifespan disabled so no background tasks start."""
    with _client() as c:
        yield c


# ── System ──────────────────────────────────────────────────────────────

def test_health_returns_ok(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "api"}


def test_request_id_is_echoed(client: TestClient) -> None:
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers.get("x-request-id") == "abc123"


# ── Attestation status ──────────────────────────────────────────────────

def test_status_worked_example(client: TestClient) -> None:
    r = client.get("/api/attestations/status", params={"predictionId": 7, "account": "0xAlice"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert "timestamp" in body

    data = body["data"]
    assert data["predictionId"] == 7
    assert data["confidence"] == pytest.approx(0.7)
    assert data["verifiedAmount"] == 100
    assert data["totalRequired"] == 100
    assert data["message"] == "partially verified"
    assert [p["sourceId"] for p in data["proof"]] == ["celo", "base"]
    assert data["state"] == "challengeable"

    window = data["challengeWindow"]
    assert window["seconds"] == 7200
    assert 7199 <= window["remaining"] <= 7200
    assert isinstance(window["endsAt"], int)


def test_status_default_account_has_no_evidence(client: TestClient) -> None:
    r = client.get("/api/attestations/status", params={"predictionId": 8, "requiredAmount": 50})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["proof"] == []
    assert data["totalRequired"] == 50
    assert data["message"] == "insufficient evidence"


def test_status_reports_same_window_on_repeat(client: TestClient) -> None:
    params = {"predictionId": 9, "account": "0xAlice"}
    first = client.get("/api/attestations/status", params=params).json()["data"]["challengeWindow"]
    second = client.get("/api/attestations/status", params=params).json()["data"]["challengeWindow"]
    assert first["endsAt"] == second["endsAt"]


def test_status_missing_prediction_id(client: TestClient) -> None:
    r = client.get("/api/attestations/status")
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "invalid_request"
    assert "predictionId" in body["message"]


@pytest.mark.parametrize("params", [
    {"predictionId": "abc"},
    {"predictionId": 1, "requiredAmount": 0},
    {"predictionId": 1, "requiredAmount": -5},
])
def test_status_malformed_params(client: TestClient, params: dict) -> None:
    r = client.get("/api/attestations/status", params=params)
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_status_unregistered_exercise_type(client: TestClient) -> None:
    r = client.get("/api/attestations/status", params={"predictionId": 1, "exerciseType": "squats"})
    assert r.status_code == 400
    assert "squats" in r.json()["message"]


def test_status_rejects_post(client: TestClient) -> None:
    r = client.post("/api/attestations/status", params={"predictionId": 1})
    assert r.status_code == 405
    assert r.json()["error"] == "method_not_allowed"


# ── XMTP bot ────────────────────────────────────────────────────────────

def test_queue_status_never_exposes_secrets() -> None:
    bot = BotSettings(
        bot_private_key="0xdeadbeef",
        encryption_key="super-secret",
        xmtp_env="production",
        prediction_bot_xmtp_address="0xBot",
    )
    with _client(bot=bot) as client:
        r = client.get("/api/xmtp/queue-status")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["queue"]["total"] == 0
    assert body["botConfiguration"] == {
        "botPrivateKey": True,
        "encryptionKey": True,
        "openaiKey": False,
        "xmtpEnv": "production",
        "botAddress": "0xBot",
    }
    assert "0xdeadbeef" not in r.text
    assert "super-secret" not in r.text


def test_queue_status_rejects_post(client: TestClient) -> None:
    assert client.post("/api/xmtp/queue-status").status_code == 405


def test_bot_status_unconfigured(client: TestClient) -> None:
    r = client.get("/api/xmtp/bot-status")
    assert r.status_code == 200
    body = r.json()
    assert body["online"] is False
    assert body["address"] == "Not configured"
    assert body["openaiConfigured"] is False
    assert body["redisStatus"] == "not_configured"
    assert "lastUpdated" in body


# ── Cache maintenance ───────────────────────────────────────────────────

def test_clear_cache_in_dev(client: TestClient) -> None:
    client.get("/api/attestations/status", params={"predictionId": 1, "account": "0xAlice"})
    r = client.post("/api/resolve/clear-cache")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert "1 entries" in body["message"]

    ready = client.get("/api/resolve/clear-cache")
    assert ready.status_code == 200
    assert ready.json()["message"] == "Cache clearing endpoint ready"


@pytest.mark.parametrize("environment", [Environment.STAGING, Environment.PRODUCTION])
def test_clear_cache_forbidden_outside_dev(environment: Environment) -> None:
    with _client(environment=environment) as client:
        post = client.post("/api/resolve/clear-cache")
        get = client.get("/api/resolve/clear-cache")
    assert post.status_code == 403
    assert post.json()["error"] == "forbidden"
    assert get.status_code == 403


# ── Unexpected failures ─────────────────────────────────────────────────

def _failing_client() -> TestClient:
    container = _container(Settings(environment=Environment.PRODUCTION))
    container.resolution = MagicMock()
    container.resolution.status = AsyncMock(side_effect=RuntimeError("secret detail"))
    container.queue = MagicMock()
    container.queue.stats = AsyncMock(side_effect=RuntimeError("secret detail"))
    return TestClient(create_app(container, use_lifespan=False), raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path, params",
    [
        ("/api/attestations/status", {"predictionId": 7, "account": "0xAlice"}),
        ("/api/xmtp/queue-status", {}),
    ],
)
def test_unexpected_error_is_sanitized(path: str, params: dict) -> None:
    with _failing_client() as client:
        r = client.get(path, params=params, headers={"X-Request-ID": "req-500"})
    assert r.status_code == 500
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "internal_server_error"
    assert body["message"] == "An unexpected error occurred"
    assert "secret detail" not in r.text
    assert "Traceback" not in r.text


# ── CORS ────────────────────────────────────────────────────────────────

def test_cors_uses_container_settings() -> None:
    container = _container(Settings(cors_origins=["https://app.example"]))
    with TestClient(create_app(container, use_lifespan=False)) as client:
        allowed = client.get("/health", headers={"Origin": "https://app.example"})
        other = client.get("/health", headers={"Origin": "https://evil.example"})
    assert allowed.headers.get("access-control-allow-origin") == "https://app.example"
    assert "access-control-allow-origin" not in other.headers
