"""
Attestation status endpoint.

GET /api/attestations/status: aggregated verification result for a prediction,
plus the state of its challenge window.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from shared.utils.logging import get_logger, log_context
from verifier.engine import AggregationError

from api.dependencies import ServiceContainer, get_container
from api.errors import InvalidRequest

logger = get_logger(__name__)
router = APIRouter(prefix="/api/attestations", tags=["attestations"])


@router.get("/status")
async def get_attestation_status(
    prediction_id: Optional[int] = Query(None, alias="predictionId"),
    exercise_type: str = Query("pushups", alias="exerciseType"),
    required_amount: int = Query(100, alias="requiredAmount", gt=0),
    account: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Resolve a prediction's evidence.

    The first request for a prediction opens its challenge window; later
    requests report that window, including any re-aggregated result.
    """
    if prediction_id is None:
        raise InvalidRequest("predictionId is required")

    try:
        with log_context(prediction_id=prediction_id, exercise_type=exercise_type):
            window = await container.resolution.status(
                prediction_id,
                account or f"prediction:{prediction_id}",
                exercise_type,
                required_amount,
            )
    except AggregationError as exc:
        raise InvalidRequest(f"No evidence sources registered for exercise type '{exc.exercise_type}'") from exc

    return {
        "success": True,
        "data": {
            "predictionId": prediction_id,
            **window.result.to_dict(),
            "state": window.state.value,
            "challengeWindow": window.snapshot(),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
