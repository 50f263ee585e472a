"""Domain enumerations for the SweatProof platform."""
from __future__ import annotations

from enum import Enum


class ChallengeState(str, Enum):
    PENDING = "pending"
    CHALLENGEABLE = "challengeable"
    FINALIZED = "finalized"
    DISPUTED = "disputed"


class DeliveryState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"


class AggregationErrorKind(str, Enum):
    NO_VERIFIERS_REGISTERED = "no_verifiers_registered"


class EvidenceSource(str, Enum):
    """Chains the platform reads activity records from."""
    CELO = "celo"
    BASE = "base"
    BSC = "bsc"


class ExerciseType(str, Enum):
    PUSHUPS = "pushups"
    SQUATS = "squats"
    PULLUPS = "pullups"
    JUMPS = "jumps"
    SITUPS = "situps"
