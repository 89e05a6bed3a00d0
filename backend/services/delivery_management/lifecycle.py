"""
Core delivery lifecycle operations.

This module contains the business logic behind the delivery endpoints:
creating deliveries and starting rider dispatch, handling rider replies
(review / accept / decline), status updates, operator re-dispatch and
pickup handover OTPs.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from deliveries.models import Delivery
from riders.models import ServiceArea
from riders.services import find_rider_by_phone, list_candidates
from services.dispatch.exceptions import DispatchAlreadyActiveError
from services.dispatch.sequencer import ALREADY_ASSIGNED, EXHAUSTED
from .exceptions import (
    AreaNotFoundError,
    DeliveryAlreadyAssignedError,
    DeliveryExistsError,
    DeliveryNotDispatchableError,
    DeliveryNotFoundError,
    InvalidOtpError,
    InvalidStatusError,
    NoActiveOfferError,
    RiderNotFoundError,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = {choice for choice, _ in Delivery.STATUS_CHOICES}
REDISPATCHABLE_STATUSES = ('pending', 'no_riders')
CLOSED_STATUSES = ('delivered', 'cancelled')
OTP_ATTEMPTS = 5


@dataclass
class DeliveryResult:
    """Result object for delivery operations."""
    success: bool
    delivery: Optional[Delivery] = None
    message: str = ""
    extra: Optional[Dict[str, Any]] = None


def build_offer_context(delivery: Delivery) -> Dict[str, Any]:
    """Details handed to the transport with every offer for this delivery."""
    return {
        "order_id": delivery.order_id,
        "delivery_id": delivery.id,
        "pickup_address": delivery.pickup_address or "",
        "dropoff_address": delivery.dropoff_address or "",
        "dropoff_location": delivery.dropoff_location or "",
        "customer_name": delivery.customer_name,
    }


def _get_delivery(delivery_id: int) -> Delivery:
    try:
        return Delivery.objects.get(id=delivery_id)
    except Delivery.DoesNotExist:
        raise DeliveryNotFoundError("Delivery not found")


def _find_candidates(delivery: Delivery) -> list:
    return list_candidates(
        delivery.area_id,
        delivery.service_kind,
        pickup=delivery.pickup,
    )


def _dispatch(delivery: Delivery, dispatcher, candidates: list) -> None:
    """
    Start dispatch once the delivery row is committed, or park the delivery
    in ``no_riders`` when nobody can take it.
    """
    if candidates:
        context = build_offer_context(delivery)
        transaction.on_commit(
            lambda: dispatcher.start_dispatch(delivery.id, candidates, context)
        )
        return

    logger.info("No available riders for delivery %s", delivery.id)
    if not dispatcher.delivery_store.mark_exhausted(delivery.id):
        return

    delivery.refresh_from_db(fields=['status', 'updated_at'])
    from realtime.broadcast import notify_operators_event
    transaction.on_commit(
        lambda: notify_operators_event(
            'delivery_exhausted', delivery.id, 'No available riders found'
        )
    )


# ===================== Delivery Operations =====================

@transaction.atomic
def create_delivery(
    dispatcher,
    order_id: int,
    area_id: Optional[int] = None,
    service_kind: str = 'delivery',
    **details,
) -> DeliveryResult:
    """
    Create a delivery for an order and start offering it to riders.
    
    Args:
        dispatcher: DispatchSequencer that will run the offers
        order_id: Order being delivered
        area_id: Service area used to pick candidate riders
        service_kind: Kind of job (delivery / ride_service)
        **details: Customer, pickup and dropoff fields of ``Delivery``
    
    Returns:
        DeliveryResult with the created delivery
    
    Raises:
        DeliveryExistsError: If the order already has a delivery
        AreaNotFoundError: If ``area_id`` does not exist
    """
    if Delivery.objects.filter(order_id=order_id).exists():
        raise DeliveryExistsError("A delivery already exists for this order")

    if area_id is not None and not ServiceArea.objects.filter(id=area_id).exists():
        raise AreaNotFoundError("Service area not found")

    delivery = Delivery.objects.create(
        order_id=order_id,
        area_id=area_id,
        service_kind=service_kind,
        status='pending',
        **details,
    )

    candidates = _find_candidates(delivery)
    _dispatch(delivery, dispatcher, candidates)
    message = (
        "Delivery created and rider notification started"
        if candidates
        else "No available riders found"
    )

    return DeliveryResult(
        success=True,
        delivery=delivery,
        message=message,
        extra={
            "riders": [
                {"id": c.rider_id, "phone": c.phone, "name": c.name}
                for c in candidates
            ],
        },
    )


@transaction.atomic
def update_delivery_status(dispatcher, delivery_id: int, status: str) -> DeliveryResult:
    """
    Set a delivery's status from the operator side.
    
    Leaving ``pending`` stops any dispatch still running for the delivery.
    """
    if status not in VALID_STATUSES:
        raise InvalidStatusError(f"Invalid status: {status}")

    delivery = _get_delivery(delivery_id)
    delivery.status = status
    update_fields = ['status', 'updated_at']
    if status == 'delivered':
        delivery.delivered_at = timezone.now()
        update_fields.append('delivered_at')
    delivery.save(update_fields=update_fields)

    was_dispatching = False
    if status != 'pending':
        was_dispatching = dispatcher.cancel(delivery.id)

    if status == 'cancelled':
        from realtime.broadcast import notify_operators_event
        notify_operators_event('delivery_cancelled', delivery.id, 'Delivery cancelled')

    return DeliveryResult(
        success=True,
        delivery=delivery,
        message=f"Status updated to {status}",
        extra={"dispatch_cancelled": was_dispatching},
    )


@transaction.atomic
def redispatch_delivery(dispatcher, delivery_id: int) -> DeliveryResult:
    """
    Offer an unassigned delivery to riders again.

    Used after the candidate list ran out, or when the process that was
    dispatching it restarted and lost its in-memory offer.

    Raises:
        DeliveryNotDispatchableError: If the delivery has a rider or is finished
        DispatchAlreadyActiveError: If the delivery is still being dispatched
    """
    delivery = _get_delivery(delivery_id)
    if delivery.rider_id is not None or delivery.status not in REDISPATCHABLE_STATUSES:
        raise DeliveryNotDispatchableError(
            f"Cannot dispatch - delivery is already {delivery.status}"
        )

    if dispatcher.get_offer(delivery.id) is not None:
        raise DispatchAlreadyActiveError("Delivery is already being offered to riders")

    candidates = _find_candidates(delivery)
    if candidates and delivery.status != 'pending':
        delivery.status = 'pending'
        delivery.save(update_fields=['status', 'updated_at'])
    _dispatch(delivery, dispatcher, candidates)
    return DeliveryResult(
        success=bool(candidates),
        delivery=delivery,
        message=(
            "Rider notification restarted"
            if candidates
            else "No available riders found"
        ),
        extra={"rider_candidates": len(candidates)},
    )


# ===================== Rider Replies =====================

def review_offer(dispatcher, phone: str) -> Delivery:
    """Delivery currently offered to ``phone``, for the rider to review."""
    record = dispatcher.resolve_offer(phone)
    if record is None:
        raise NoActiveOfferError("No active delivery found for this rider")

    try:
        return Delivery.objects.select_related('area', 'rider').get(id=record.delivery_id)
    except Delivery.DoesNotExist:
        raise DeliveryNotFoundError("Delivery not found")


def accept_offer(dispatcher, phone: str) -> DeliveryResult:
    """
    Assign the delivery offered to ``phone`` to that rider.
    
    Raises:
        RiderNotFoundError: If no rider has this phone
        NoActiveOfferError: If the phone's mapping is missing or expired
        DeliveryAlreadyAssignedError: If the delivery was already taken
    """
    rider = find_rider_by_phone(phone)
    if rider is None:
        raise RiderNotFoundError("Rider not found")

    result = dispatcher.accept(rider.phone, rider.id)
    if not result.accepted:
        if result.reason == ALREADY_ASSIGNED:
            raise DeliveryAlreadyAssignedError(
                "This delivery has already been assigned to another rider"
            )
        raise NoActiveOfferError("No active delivery found for this rider")

    delivery = Delivery.objects.select_related('rider').get(id=result.delivery_id)
    return DeliveryResult(
        success=True,
        delivery=delivery,
        message="Delivery accepted successfully",
        extra={"rider_name": rider.name},
    )


def decline_offer(dispatcher, phone: str) -> DeliveryResult:
    """
    Decline the delivery offered to ``phone`` and move on to the next rider.

    Declining an offer that is no longer this rider's turn is a no-op.
    """
    result = dispatcher.decline(phone)
    if result.delivery_id is None:
        raise NoActiveOfferError("No active delivery found for this rider")

    if not result.advanced:
        message = "Delivery already handled"
    elif result.reason == EXHAUSTED:
        message = "All riders declined the delivery"
    else:
        message = "Delivery declined, notifying next rider"

    return DeliveryResult(
        success=True,
        delivery=Delivery.objects.filter(id=result.delivery_id).first(),
        message=message,
        extra={"advanced": result.advanced},
    )


# ===================== Pickup OTP =====================

def _new_otp() -> str:
    return str(secrets.randbelow(900000) + 100000)


@transaction.atomic
def generate_delivery_otp(delivery_id: int) -> DeliveryResult:
    """
    Issue a fresh 6-digit handover code for a delivery.

    The code replaces any earlier one and stays valid for
    ``DELIVERY_OTP_TTL_MINUTES``. Codes are unique among unexpired ones so a
    verification can only ever match a single delivery.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
        InvalidStatusError: If the delivery is already delivered or cancelled
    """
    try:
        delivery = Delivery.objects.select_for_update().get(id=delivery_id)
    except Delivery.DoesNotExist:
        raise DeliveryNotFoundError("Delivery not found")

    if delivery.status in CLOSED_STATUSES:
        raise InvalidStatusError(f"Cannot issue OTP - delivery is already {delivery.status}")

    now = timezone.now()
    live = Delivery.objects.filter(otp_expires_at__gt=now).exclude(id=delivery.id)
    otp = _new_otp()
    for _ in range(OTP_ATTEMPTS - 1):
        if not live.filter(otp=otp).exists():
            break
        otp = _new_otp()

    delivery.otp = otp
    delivery.otp_expires_at = now + timedelta(minutes=settings.DELIVERY_OTP_TTL_MINUTES)
    delivery.save(update_fields=['otp', 'otp_expires_at', 'updated_at'])
    logger.info("Issued OTP for delivery %s", delivery.id)

    return DeliveryResult(
        success=True,
        delivery=delivery,
        message="OTP generated",
        extra={"otp": otp, "expires_at": delivery.otp_expires_at},
    )


@transaction.atomic
def verify_delivery_otp(otp: str) -> DeliveryResult:
    """
    Check a handover code and move its delivery to ``in_transit``.

    A code is single use: it is cleared once verified.

    Raises:
        InvalidOtpError: If no delivery holds an unexpired ``otp``
        InvalidStatusError: If the delivery has no rider or is already closed
    """
    delivery = (
        Delivery.objects.select_for_update()
        .filter(otp=otp, otp_expires_at__gt=timezone.now())
        .first()
    )
    if delivery is None:
        raise InvalidOtpError("Invalid or expired OTP")

    if delivery.rider_id is None:
        raise InvalidStatusError("Delivery has no rider assigned yet")
    if delivery.status in CLOSED_STATUSES:
        raise InvalidStatusError(f"Delivery is already {delivery.status}")

    delivery.status = 'in_transit'
    delivery.otp = None
    delivery.otp_expires_at = None
    delivery.save(update_fields=['status', 'otp', 'otp_expires_at', 'updated_at'])
    logger.info("OTP verified for delivery %s, now in transit", delivery.id)

    return DeliveryResult(
        success=True,
        delivery=Delivery.objects.select_related('rider', 'area').get(id=delivery.id),
        message="OTP verified successfully",
    )
