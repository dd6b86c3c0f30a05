"""
Outbound domain events.

The core emits these fire-and-forget; delivery (push, SMS, websockets) is
owned by the notification collaborator.  Publishers must never block or
fail the dispatch path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class DomainEvent:
    request_id: int
    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
            elif hasattr(value, "value"):
                payload[key] = value.value
        return {"event": self.name, **payload}


@dataclass(frozen=True)
class OfferCreated(DomainEvent):
    offer_id: int = 0
    driver_id: str = ""
    expires_at: Optional[datetime] = None
    distance_km: float = 0.0


@dataclass(frozen=True)
class AssignmentAccepted(DomainEvent):
    driver_id: str = ""
    assignment_version: int = 0
    requires_extra_billing: bool = False


@dataclass(frozen=True)
class StatusChanged(DomainEvent):
    previous: str = ""
    current: str = ""
    assignment_version: int = 0
    detail: dict[str, Any] = field(default_factory=dict)


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Hand the event off without waiting for delivery."""
