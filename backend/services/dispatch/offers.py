"""Value objects shared by the dispatch sequencer and its collaborators."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .scheduling import ScheduledTask


@dataclass(frozen=True)
class Candidate:
    """A rider eligible to receive an offer."""
    rider_id: int
    phone: str
    name: str = ""


@dataclass(frozen=True)
class MappingRecord:
    """Durable phone -> delivery correlation for inbound replies."""
    phone: str
    delivery_id: int
    expires_at: datetime


@dataclass(eq=False)
class DeliveryOffer:
    """
    In-flight dispatch of one delivery.

    ``cursor`` points at the candidate currently being offered the delivery;
    ``pending_task`` is whatever is scheduled to happen next (notify, advance
    on failure, or advance on timeout).
    """
    delivery_id: int
    candidates: Tuple[Candidate, ...]
    context: Dict[str, Any] = field(default_factory=dict)
    cursor: int = 0
    pending_task: Optional[ScheduledTask] = None

    @property
    def current_candidate(self) -> Optional[Candidate]:
        if self.cursor < len(self.candidates):
            return self.candidates[self.cursor]
        return None

    def context_for(self, candidate: Candidate) -> Dict[str, Any]:
        return {
            **self.context,
            "delivery_id": self.delivery_id,
            "rider_id": candidate.rider_id,
            "rider_name": candidate.name,
        }

    def cancel_pending(self) -> None:
        if self.pending_task is not None:
            self.pending_task.cancel()
            self.pending_task = None


@dataclass
class DispatchResult:
    """Result of starting a dispatch."""
    delivery_id: int
    started: bool
    candidate_count: int = 0
    message: str = ""


@dataclass
class AcceptanceResult:
    """Result of a rider accepting an offer."""
    accepted: bool
    reason: str
    delivery_id: Optional[int] = None
    rider_id: Optional[int] = None


@dataclass
class DeclineResult:
    """Result of a rider declining an offer."""
    advanced: bool
    reason: str
    delivery_id: Optional[int] = None
