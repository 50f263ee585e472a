"""
Pydantic v2 domain models shared across SweatProof services.
These are the wire/storage representations of queue state.
"""
from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import DeliveryState


class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class NotificationPayload(DomainModel):
    """What the bot transport needs: who to message and what to say."""
    address: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueueItem(DomainModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    dedup_key: str
    state: DeliveryState = DeliveryState.QUEUED
    attempts: int = Field(default=0, ge=0)
    created_at: float
    updated_at: float
    next_attempt_at: float
    last_error: Optional[str] = None
    # Serialized last: the Redis claim script patches the first "state" and "updated_at" it finds.
    payload: NotificationPayload


class QueueStats(DomainModel):
    queued: int = 0
    in_flight: int = 0
    delivered: int = 0
    failed: int = 0
    total: int = 0
    oldest_queued_age_s: Optional[float] = None

    @classmethod
    def from_counts(cls, counts: dict[DeliveryState, int], oldest_queued_age_s: Optional[float]) -> "QueueStats":
        return cls(
            queued=counts.get(DeliveryState.QUEUED, 0),
            in_flight=counts.get(DeliveryState.IN_FLIGHT, 0),
            delivered=counts.get(DeliveryState.DELIVERED, 0),
            failed=counts.get(DeliveryState.FAILED, 0),
            total=sum(counts.values()),
            oldest_queued_age_s=oldest_queued_age_s,
        )
