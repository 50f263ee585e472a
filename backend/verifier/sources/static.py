"""
Static evidence source for local development and tests.
Serves fixed per-account amounts; accounts it does not know yield no evidence.
"""
from __future__ import annotations

import time
from typing import Mapping, Optional

from verifier.sources.base import Evidence


class StaticChainVerifier:
    def __init__(
        self,
        source_id: str,
        amounts: Mapping[str, int],
        weight: float = 1.0,
        observed_at: float | None = None,
    ) -> None:
        self.source_id = source_id
        self._amounts = dict(amounts)
        self._weight = weight
        self._observed_at = observed_at

    async def verify(self, account: str, amount: int) -> Optional[Evidence]:
        if account not in self._amounts:
            return None
        return Evidence(
            source_id=self.source_id,
            amount_observed=self._amounts[account],
            weight=self._weight,
            timestamp_observed=self._observed_at if self._observed_at is not None else time.time(),
            proof_ref=f"static:{self.source_id}:{account}",
        )
