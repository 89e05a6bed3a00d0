"""
Rider dispatch sequencer.

Offers a delivery to ranked candidate riders one at a time:
1. Notify the rider at the cursor (with retries)
2. On success, record the phone -> delivery mapping and wait for a reply
3. On timeout, decline or send failure, move the cursor to the next rider
4. Stop when a rider accepts, the list runs out, or the dispatch is cancelled

Offer state is in memory only; the phone mapping is the durable side channel
that lets an inbound reply (keyed by phone number) find its delivery.
"""

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.utils import timezone

from common.utils.phone import normalize_phone
from .exceptions import RetryExhaustedError, TransportError
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
from .scheduling import Scheduler

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
UNRESOLVED = "unresolved"
ALREADY_ASSIGNED = "already_assigned"
NOT_CURRENT = "not_current"
ADVANCED = "advanced"
EXHAUSTED = "exhausted"


class DispatchSequencer:
    """
    Sequential offer scheduler shared by all in-flight deliveries.

    Args:
        transport: Has ``format_recipient(phone)`` and
            ``send(recipient, context, timeout)``; ``send`` raises
            ``TransportError`` on failure
        mapping_store: Has ``upsert(phone, delivery_id, expires_at)``,
            ``resolve(phone) -> MappingRecord | None`` and
            ``delete(phone, delivery_id)``
        delivery_store: Has ``is_unassigned``, ``mark_assigned`` and
            ``mark_exhausted``
        scheduler: Source of cancellable deferred calls
        registry: Offer registry (a fresh one by default)
        retry_policy: Attempts/backoff/timeout for each notification
        offer_timeout: Seconds a notified rider has to accept
        mapping_ttl: Seconds a phone mapping stays resolvable
        failure_delay: Seconds before moving on after a failed notification
        clock: Returns the current aware datetime
        sleep: Backoff sleep used between transport attempts
        notifier: Called as ``notifier(event_type, delivery_id, message, extra=...)``
            when a delivery is assigned or runs out of riders; never called
            while a delivery lock is held
    """

    def __init__(
        self,
        transport,
        mapping_store,
        delivery_store,
        scheduler: Scheduler,
        registry: Optional[OfferRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        offer_timeout: float = 60.0,
        mapping_ttl: float = 300.0,
        failure_delay: float = 1.0,
        clock: Callable[[], Any] = timezone.now,
        sleep: Callable[[float], None] = time.sleep,
        notifier: Optional[Callable[..., Any]] = None,
    ):
        self.transport = transport
        self.mapping_store = mapping_store
        self.delivery_store = delivery_store
        self.scheduler = scheduler
        self.registry = registry if registry is not None else OfferRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.offer_timeout = offer_timeout
        self.mapping_ttl = mapping_ttl
        self.failure_delay = failure_delay
        self.clock = clock
        self.sleep = sleep
        self.notifier = notifier

    # ===================== Entry Points =====================

    def start_dispatch(
        self,
        delivery_id: int,
        candidates: Iterable[Candidate],
        context: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """
        Begin offering ``delivery_id`` to ``candidates`` in order.

        Returns immediately; the first notification runs on the scheduler.

        Raises:
            DispatchAlreadyActiveError: If the delivery already has an offer
        """
        candidates = tuple(candidates)
        if not candidates:
            logger.info("No available riders for delivery %s", delivery_id)
            return DispatchResult(
                delivery_id=delivery_id,
                started=False,
                message="No available riders found",
            )

        offer = DeliveryOffer(
            delivery_id=delivery_id,
            candidates=candidates,
            context=dict(context or {}),
        )
        with self.registry.locked(delivery_id):
            self.registry.add(offer)
            offer.pending_task = self.scheduler.call_later(0, self._notify, offer, 0)

        logger.info(
            "Started dispatch for delivery %s with %d candidate rider(s)",
            delivery_id, len(candidates),
        )
        return DispatchResult(
            delivery_id=delivery_id,
            started=True,
            candidate_count=len(candidates),
            message="Delivery created and rider notification started",
        )

    def resolve_offer(self, phone: str) -> Optional[MappingRecord]:
        """Return the live mapping for ``phone``, or None if missing/expired."""
        record = self.mapping_store.resolve(normalize_phone(phone))
        if record is None:
            return None
        if record.expires_at <= self.clock():
            logger.info("Mapping for %s expired at %s", record.phone, record.expires_at)
            return None
        return record

    def accept(self, phone: str, rider_id: int) -> AcceptanceResult:
        """
        Assign the delivery currently mapped to ``phone`` to ``rider_id``.

        Never raises for unresolvable or already-assigned deliveries; the
        result says why the acceptance was refused.
        """
        record = self.resolve_offer(phone)
        if record is None:
            return AcceptanceResult(accepted=False, reason=UNRESOLVED)

        delivery_id = record.delivery_id
        if not self.delivery_store.is_unassigned(delivery_id):
            logger.info("Delivery %s is no longer unassigned; ignoring acceptance from %s", delivery_id, phone)
            return AcceptanceResult(accepted=False, reason=ALREADY_ASSIGNED, delivery_id=delivery_id)

        with self.registry.locked(delivery_id):
            if not self.delivery_store.mark_assigned(delivery_id, rider_id):
                return AcceptanceResult(accepted=False, reason=ALREADY_ASSIGNED, delivery_id=delivery_id)
            offer = self.registry.pop(delivery_id)
            if offer is not None:
                offer.cancel_pending()

        logger.info("Rider %s accepted delivery %s", rider_id, delivery_id)
        self._forget_mapping(record)
        self._announce(
            "delivery_assigned",
            delivery_id,
            "Delivery accepted by rider",
            extra={"rider_id": rider_id},
        )
        return AcceptanceResult(
            accepted=True,
            reason=ACCEPTED,
            delivery_id=delivery_id,
            rider_id=rider_id,
        )

    def decline(self, phone: str) -> DeclineResult:
        """
        Drop ``phone``'s mapping, then move straight to the next rider if
        ``phone`` holds the current offer.

        A rider who declined can't accept the same delivery afterwards.
        """
        record = self.resolve_offer(phone)
        if record is None:
            return DeclineResult(advanced=False, reason=UNRESOLVED)

        delivery_id = record.delivery_id
        self._forget_mapping(record)

        with self.registry.locked(delivery_id):
            offer = self.registry.get(delivery_id)
            current = offer.current_candidate if offer else None
            if current is None or normalize_phone(current.phone) != normalize_phone(phone):
                return DeclineResult(advanced=False, reason=NOT_CURRENT, delivery_id=delivery_id)

            logger.info("Rider %s declined delivery %s", current.rider_id, delivery_id)
            next_cursor = self._step(offer)

        if next_cursor is None:
            self._finish_exhausted(offer)

        return DeclineResult(
            advanced=True,
            reason=ADVANCED if next_cursor is not None else EXHAUSTED,
            delivery_id=delivery_id,
        )

    def cancel(self, delivery_id: int) -> bool:
        """Stop dispatching ``delivery_id``. Returns False if nothing was in flight."""
        with self.registry.locked(delivery_id):
            offer = self.registry.pop(delivery_id)
            if offer is None:
                return False
            offer.cancel_pending()

        logger.info(
            "Cancelled dispatch for delivery %s at rider %d of %d",
            delivery_id, offer.cursor + 1, len(offer.candidates),
        )
        return True

    def get_offer(self, delivery_id: int) -> Optional[DeliveryOffer]:
        return self.registry.get(delivery_id)

    def active_offers(self) -> List[DeliveryOffer]:
        return self.registry.values()

    def shutdown(self) -> None:
        """Drop every in-flight offer and pending timer."""
        for offer in self.registry.values():
            self.cancel(offer.delivery_id)
        self.scheduler.shutdown()

    # ===================== Offer Steps =====================

    def _notify(self, offer: DeliveryOffer, cursor: int) -> None:
        if not self.registry.is_current(offer, cursor):
            return

        candidate = offer.candidates[cursor]
        try:
            sent = self._send_offer(offer, candidate)
        except Exception:
            logger.exception(
                "Unexpected error notifying rider %s for delivery %s",
                candidate.rider_id, offer.delivery_id,
            )
            sent = False

        with self.registry.locked(offer.delivery_id):
            # Accepted, declined or cancelled while the transport call ran
            if not self.registry.is_current(offer, cursor):
                return

            if sent:
                self._record_mapping(offer, candidate)
                offer.pending_task = self.scheduler.call_later(
                    self.offer_timeout, self._on_timeout, offer, cursor
                )
            else:
                offer.pending_task = self.scheduler.call_later(
                    self.failure_delay, self._advance, offer, cursor
                )

    def _on_timeout(self, offer: DeliveryOffer, cursor: int) -> None:
        candidate = offer.candidates[cursor]
        logger.info(
            "No response from rider %s in %s seconds, moving to next rider for delivery %s",
            candidate.rider_id, self.offer_timeout, offer.delivery_id,
        )
        self._advance(offer, cursor)

    def _advance(self, offer: DeliveryOffer, cursor: int) -> None:
        with self.registry.locked(offer.delivery_id):
            if not self.registry.is_current(offer, cursor):
                return
            next_cursor = self._step(offer)

        if next_cursor is None:
            self._finish_exhausted(offer)

    def _step(self, offer: DeliveryOffer) -> Optional[int]:
        """
        Move ``offer`` to its next candidate. Caller holds the delivery lock.

        Returns the new cursor, or None once the candidates are exhausted and
        the offer has been dropped; the caller then runs ``_finish_exhausted``
        after releasing the lock.
        """
        offer.cancel_pending()
        offer.cursor += 1

        if offer.cursor >= len(offer.candidates):
            self.registry.pop(offer.delivery_id)
            logger.info(
                "All %d riders notified for delivery %s, none accepted",
                len(offer.candidates), offer.delivery_id,
            )
            return None

        offer.pending_task = self.scheduler.call_later(0, self._notify, offer, offer.cursor)
        return offer.cursor

    def _finish_exhausted(self, offer: DeliveryOffer) -> None:
        # Conditional in the store: a late acceptance that got in first wins
        try:
            exhausted = self.delivery_store.mark_exhausted(offer.delivery_id)
        except Exception:
            logger.exception("Failed to mark delivery %s as having no riders", offer.delivery_id)
            return
        if exhausted:
            self._announce(
                "delivery_exhausted",
                offer.delivery_id,
                "All riders notified, none accepted",
            )

    def _forget_mapping(self, record: MappingRecord) -> None:
        try:
            self.mapping_store.delete(record.phone, record.delivery_id)
        except Exception:
            logger.exception(
                "Could not drop mapping %s -> delivery %s",
                record.phone, record.delivery_id,
            )

    def _announce(self, event_type: str, delivery_id: int, message: str, extra=None) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(event_type, delivery_id, message, extra=extra)
        except Exception:
            logger.exception("Failed to announce %s for delivery %s", event_type, delivery_id)

    def _send_offer(self, offer: DeliveryOffer, candidate: Candidate) -> bool:
        recipient = self.transport.format_recipient(candidate.phone)
        context = offer.context_for(candidate)

        try:
            call_with_retry(
                lambda timeout: self.transport.send(recipient, context, timeout=timeout),
                self.retry_policy,
                retry_on=(TransportError,),
                sleep=self.sleep,
                description=f"rider {candidate.rider_id} / delivery {offer.delivery_id}",
            )
        except RetryExhaustedError as exc:
            logger.error(
                "Failed to send notification to rider %s after %d attempts: %s",
                candidate.rider_id, exc.attempts, exc.last_error,
            )
            return False

        logger.info(
            "Notification sent to rider %s (%s) for delivery %s",
            candidate.rider_id, candidate.phone, offer.delivery_id,
        )
        return True

    def _record_mapping(self, offer: DeliveryOffer, candidate: Candidate) -> None:
        phone = normalize_phone(candidate.phone)
        expires_at = self.clock() + timedelta(seconds=self.mapping_ttl)
        try:
            self.mapping_store.upsert(phone, offer.delivery_id, expires_at)
        except Exception:
            logger.exception(
                "Could not record mapping %s -> delivery %s; replies from this rider won't resolve",
                phone, offer.delivery_id,
            )
            return
        logger.debug("Mapped %s -> delivery %s until %s", phone, offer.delivery_id, expires_at)
