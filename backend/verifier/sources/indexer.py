"""
Chain activity indexer source.
Reads an account's recorded exercise total for one chain from the indexer's JSON API.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.logging import get_logger

from verifier.sources.base import Evidence

logger = get_logger(__name__)


def _record_to_evidence(
    record: dict[str, Any],
    source_id: str,
    weight: float,
    fetched_at: float,
) -> Optional[Evidence]:
    """
    Indexer record -> Evidence. Records look like
    {"amount": 120, "timestamp": 1718000000, "verificationHash": "0x..."};
    timestamp may be in milliseconds.
    """
    raw_amount = record.get("amount")
    if raw_amount is None:
        return None
    try:
        amount = int(raw_amount)
    except (TypeError, ValueError):
        logger.warning("indexer_bad_amount", source=source_id, amount=raw_amount)
        return None
    if amount < 0:
        return None

    ts = record.get("timestamp")
    try:
        observed = float(ts) if ts is not None else fetched_at
    except (TypeError, ValueError):
        observed = fetched_at
    if observed > 1e12:
        observed /= 1000.0

    return Evidence(
        source_id=source_id,
        amount_observed=amount,
        weight=weight,
        timestamp_observed=observed,
        proof_ref=str(record.get("verificationHash") or record.get("txHash") or ""),
    )


class IndexerChainVerifier:
    """One chain's indexer, bound to one exercise type."""

    def __init__(
        self,
        source_id: str,
        exercise_type: str,
        base_url: str,
        weight: float,
        activity_path: str = "/v1/activity",
        timeout_s: float = 5.0,
        circuit: CircuitBreaker | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.source_id = source_id
        self.exercise_type = exercise_type
        self.timeout_s = timeout_s
        self._url = base_url.rstrip("/") + activity_path
        self._weight = weight
        self._circuit = circuit or CircuitBreaker(name=f"indexer:{source_id}")
        self._client = client

    async def verify(self, account: str, amount: int) -> Optional[Evidence]:
        return await self._circuit.call(self._fetch, account, amount)

    async def _fetch(self, account: str, amount: int) -> Optional[Evidence]:
        params = {"account": account, "exercise": self.exercise_type, "required": amount}
        fetched_at = time.time()
        if self._client is not None:
            resp = await self._client.get(self._url, params=params, timeout=self.timeout_s)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                resp = await client.get(self._url, params=params)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        data = resp.json()
        record = data.get("data", data) if isinstance(data, dict) else None
        if not isinstance(record, dict):
            logger.warning("indexer_unexpected_body", source=self.source_id, url=self._url)
            return None
        return _record_to_evidence(record, self.source_id, self._weight, fetched_at)
