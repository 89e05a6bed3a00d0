"""
Rider dispatch service.

This package handles:
    - Offering a delivery to ranked riders one at a time
    - Cancellable offer timers and retrying notification sends
    - Phone -> delivery mappings used to resolve rider replies

Database-backed stores live in ``services.dispatch.stores`` and are only
imported once Django's app registry is ready.
"""

from .exceptions import DispatchAlreadyActiveError, RetryExhaustedError, TransportError
from .factory import build_dispatcher, get_dispatcher
from .offers import (
    AcceptanceResult,
    Candidate,
    DeclineResult,
    DeliveryOffer,
    DispatchResult,
    MappingRecord,
)
from .registry import OfferRegistry
from .retry import RetryPolicy, call_with_retry
from .scheduling import ScheduledTask, Scheduler, TimerScheduler
from .sequencer import DispatchSequencer

__all__ = [
    "DispatchSequencer",
    "build_dispatcher",
    "get_dispatcher",
    "OfferRegistry",
    "RetryPolicy",
    "call_with_retry",
    "Scheduler",
    "ScheduledTask",
    "TimerScheduler",
    "Candidate",
    "DeliveryOffer",
    "MappingRecord",
    "DispatchResult",
    "AcceptanceResult",
    "DeclineResult",
    "DispatchAlreadyActiveError",
    "RetryExhaustedError",
    "TransportError",
]
