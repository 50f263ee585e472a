"""
Unit tests for evidence sources: indexer parsing over a mocked HTTP transport,
registry construction from settings, and the circuit breaker guarding them.

Run: pytest backend/tests/test_sources.py -v
"""
from __future__ import annotations

import httpx
import pytest

from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from verifier.config import VerifierSettings
from verifier.sources import IndexerChainVerifier, StaticChainVerifier, build_registry


def _indexer(handler, circuit: CircuitBreaker | None = None) -> IndexerChainVerifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IndexerChainVerifier(
        source_id="celo",
        exercise_type="pushups",
        base_url="http://indexer.test/",
        weight=0.8,
        circuit=circuit,
        client=client,
    )


# ── IndexerChainVerifier ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_indexer_returns_evidence() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={"data": {"amount": 120, "timestamp": 1_718_000_000_000, "verificationHash": "0xfeed"}},
        )

    evidence = await _indexer(handler).verify("0xUser", 100)
    assert seen["path"] == "/v1/activity"
    assert seen["params"] == {"account": "0xUser", "exercise": "pushups", "required": "100"}
    assert evidence.source_id == "celo"
    assert evidence.amount_observed == 120
    assert evidence.weight == 0.8
    assert evidence.timestamp_observed == pytest.approx(1_718_000_000.0)
    assert evidence.proof_ref == "0xfeed"


@pytest.mark.asyncio
async def test_indexer_unknown_account_is_no_evidence() -> None:
    assert await _indexer(lambda r: httpx.Response(404)).verify("0xUser", 100) is None


@pytest.mark.asyncio
async def test_indexer_record_without_amount_is_no_evidence() -> None:
    handler = lambda r: httpx.Response(200, json={"timestamp": 1_718_000_000})
    assert await _indexer(handler).verify("0xUser", 100) is None


@pytest.mark.asyncio
async def test_indexer_server_error_raises() -> None:
    with pytest.raises(httpx.HTTPStatusError):
        await _indexer(lambda r: httpx.Response(500)).verify("0xUser", 100)


@pytest.mark.asyncio
async def test_indexer_failures_open_circuit() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    verifier = _indexer(handler, CircuitBreaker("indexer:celo", failure_threshold=2))
    for _ in range(2):
        with pytest.raises(httpx.HTTPStatusError):
            await verifier.verify("0xUser", 100)
    with pytest.raises(CircuitBreakerOpen):
        await verifier.verify("0xUser", 100)
    assert len(calls) == 2


# ── build_registry ──────────────────────────────────────────────────────

def test_registry_empty_without_sources() -> None:
    registry = build_registry(VerifierSettings(source_urls={}, static_amounts={}))
    assert registry.exercise_types == []


def test_registry_registers_each_source_per_exercise() -> None:
    settings = VerifierSettings(
        exercise_types=["pushups", "squats"],
        source_urls={"celo": "http://celo.test", "bsc": "http://bsc.test", "gnosis": "http://gnosis.test"},
    )
    registry = build_registry(settings)
    assert registry.exercise_types == ["pushups", "squats"]

    verifiers = registry.for_type("pushups")
    assert [v.source_id for v in verifiers] == ["bsc", "celo", "gnosis"]
    assert {v.source_id: v._weight for v in verifiers} == {"bsc": 0.8, "celo": 1.0, "gnosis": 0.5}
    assert all(v.exercise_type == "pushups" for v in verifiers)
    # One breaker per source, shared across exercise types.
    squats = {v.source_id: v for v in registry.for_type("squats")}
    assert squats["celo"]._circuit is verifiers[1]._circuit


@pytest.mark.asyncio
async def test_registry_serves_static_amounts_without_indexers() -> None:
    settings = VerifierSettings(
        exercise_types=["pushups", "squats"],
        source_urls={},
        static_amounts={"celo": {"0xAlice": 60}, "bsc": {"0xAlice": 40}},
    )
    registry = build_registry(settings)
    assert registry.exercise_types == ["pushups", "squats"]

    verifiers = registry.for_type("squats")
    assert all(isinstance(v, StaticChainVerifier) for v in verifiers)
    assert [v.source_id for v in verifiers] == ["bsc", "celo"]
    evidence = await verifiers[1].verify("0xAlice", 100)
    assert evidence.amount_observed == 60
    assert evidence.weight == 1.0
    assert await verifiers[0].verify("0xBob", 100) is None


def test_indexer_url_takes_precedence_over_static_amounts() -> None:
    settings = VerifierSettings(
        exercise_types=["pushups"],
        source_urls={"celo": "http://celo.test"},
        static_amounts={"celo": {"0xAlice": 60}, "base": {"0xAlice": 10}},
    )
    verifiers = build_registry(settings).for_type("pushups")
    assert [(v.source_id, type(v)) for v in verifiers] == [
        ("celo", IndexerChainVerifier),
        ("base", StaticChainVerifier),
    ]


# ── CircuitBreaker ──────────────────────────────────────────────────────

async def _ok() -> str:
    return "ok"


async def _boom() -> str:
    raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold(clock) -> None:
    breaker = CircuitBreaker("t", failure_threshold=3, recovery_timeout_s=60, clock=clock)
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpen) as info:
        await breaker.call(_ok)
    assert info.value.retry_after == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_breaker_success_resets_failure_count(clock) -> None:
    breaker = CircuitBreaker("t", failure_threshold=2, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(_boom)
    assert await breaker.call(_ok) == "ok"
    with pytest.raises(RuntimeError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_breaker_half_open_probe_closes_or_reopens(clock) -> None:
    breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout_s=60, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(_boom)
    clock.advance(60)
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(RuntimeError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN

    clock.advance(60)
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
