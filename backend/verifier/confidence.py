"""
Confidence scoring for aggregated evidence.

    confidence      = min(1, sum(amount / required * weight))
    verified_amount = min(required, sum(amount))

Results are immutable; any change to the evidence set means building a new one.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from verifier.sources.base import Evidence

INSUFFICIENT = "insufficient evidence"
PARTIAL = "partially verified"
FULL = "fully verified"

PARTIAL_THRESHOLD = 0.3
FULL_THRESHOLD = 0.8


@dataclass(frozen=True)
class AggregationResult:
    confidence: float
    verified_amount: int
    total_required: int
    message: str
    proof: tuple[Evidence, ...] = ()
    computed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "confidence": self.confidence,
            "verifiedAmount": self.verified_amount,
            "totalRequired": self.total_required,
            "message": self.message,
            "proof": [e.to_dict() for e in self.proof],
        }


def confidence_message(confidence: float) -> str:
    if confidence >= FULL_THRESHOLD:
        return FULL
    if confidence >= PARTIAL_THRESHOLD:
        return PARTIAL
    return INSUFFICIENT


def compute_result(
    evidence: Iterable[Evidence],
    required_amount: int,
    computed_at: Optional[float] = None,
) -> AggregationResult:
    """Build an AggregationResult from a complete evidence set."""
    if required_amount <= 0:
        raise ValueError("required_amount must be > 0")

    proof = tuple(sorted(evidence, key=lambda e: (e.timestamp_observed, e.source_id)))
    weighted = sum(e.amount_observed / required_amount * e.weight for e in proof)
    confidence = min(1.0, max(0.0, weighted))
    verified = min(required_amount, sum(e.amount_observed for e in proof))

    return AggregationResult(
        confidence=confidence,
        verified_amount=verified,
        total_required=required_amount,
        message=confidence_message(confidence),
        proof=proof,
        computed_at=computed_at if computed_at is not None else time.time(),
    )


def replace_source_evidence(current: Iterable[Evidence], replacement: Evidence) -> list[Evidence]:
    """Evidence set with the replacement's source swapped in (or added)."""
    return [e for e in current if e.source_id != replacement.source_id] + [replacement]
