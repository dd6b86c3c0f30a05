"""Cancellation-fee policies."""

from __future__ import annotations

from datetime import datetime

from dispatch_engine.domain.enums import ASSIGNED_STATUSES, RequestStatus
from dispatch_engine.infrastructure.models import DispatchRequestModel


class CancellationPolicy:
    """Free before a driver accepted; a flat fee afterwards."""

    def __init__(self, fee_after_acceptance: float = 0.0):
        self.fee_after_acceptance = fee_after_acceptance

    def fee_for(self, request: DispatchRequestModel, now: datetime) -> float:
        if RequestStatus(request.status) in ASSIGNED_STATUSES:
            return self.fee_after_acceptance
        return 0.0
