"""
Evidence schema and the chain verifier capability.
Every evidence source normalizes its records to Evidence for aggregation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class Evidence:
    """One source's claim about an account's observed activity amount."""
    source_id: str
    amount_observed: int
    weight: float
    timestamp_observed: float  # Unix timestamp
    proof_ref: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.amount_observed, bool) or not isinstance(self.amount_observed, int):
            raise ValueError(f"amount_observed must be an integer, got {self.amount_observed!r}")
        if self.amount_observed < 0:
            raise ValueError("amount_observed must be >= 0")
        if not 0.0 < self.weight <= 1.0:
            raise ValueError(f"weight must be in (0, 1], got {self.weight}")

    def to_dict(self) -> dict:
        return {
            "sourceId": self.source_id,
            "amountObserved": self.amount_observed,
            "weight": self.weight,
            "timestampObserved": self.timestamp_observed,
            "proofRef": self.proof_ref,
        }


@runtime_checkable
class ChainVerifier(Protocol):
    """
    Queries one evidence source for an account's recorded activity.

    verify() returns None when the source has no record. It may raise or hang;
    the aggregator bounds and absorbs both.
    """

    source_id: str

    async def verify(self, account: str, amount: int) -> Optional[Evidence]:
        ...


class VerifierRegistry:
    """Exercise type -> ordered verifiers registered for it."""

    def __init__(self, mapping: Mapping[str, Sequence[ChainVerifier]] | None = None) -> None:
        self._by_type: dict[str, tuple[ChainVerifier, ...]] = {}
        for exercise_type, verifiers in (mapping or {}).items():
            for v in verifiers:
                self.register(exercise_type, v)

    def register(self, exercise_type: str, verifier: ChainVerifier) -> None:
        current = self._by_type.get(exercise_type, ())
        if any(v.source_id == verifier.source_id for v in current):
            raise ValueError(f"source {verifier.source_id!r} already registered for {exercise_type!r}")
        self._by_type[exercise_type] = current + (verifier,)

    def for_type(self, exercise_type: str) -> tuple[ChainVerifier, ...]:
        return self._by_type.get(exercise_type, ())

    @property
    def exercise_types(self) -> list[str]:
        return sorted(self._by_type)
