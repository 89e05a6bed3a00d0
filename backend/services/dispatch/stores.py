"""Database-backed delivery and mapping stores for the dispatch sequencer."""

import logging
from typing import Optional

from django.db.models import Q
from django.utils import timezone

from deliveries.models import Delivery, RiderDeliveryMapping
from .offers import MappingRecord

logger = logging.getLogger(__name__)

UNASSIGNED = Q(status="pending", rider__isnull=True)


class DjangoMappingStore:
    """``RiderDeliveryMapping`` rows keyed by normalized phone."""

    def upsert(self, phone: str, delivery_id: int, expires_at) -> None:
        RiderDeliveryMapping.objects.update_or_create(
            phone=phone,
            defaults={"delivery_id": delivery_id, "expires_at": expires_at},
        )

    def resolve(self, phone: str) -> Optional[MappingRecord]:
        row = (
            RiderDeliveryMapping.objects
            .filter(phone=phone)
            .values("phone", "delivery_id", "expires_at")
            .first()
        )
        if row is None:
            return None
        return MappingRecord(**row)

    def delete(self, phone: str, delivery_id: int) -> bool:
        """Forget ``phone`` only if it still points at ``delivery_id``."""
        deleted, _ = RiderDeliveryMapping.objects.filter(
            phone=phone,
            delivery_id=delivery_id,
        ).delete()
        if deleted:
            logger.debug("Dropped mapping %s -> delivery %s", phone, delivery_id)
        return bool(deleted)

    def purge_expired(self, now=None) -> int:
        deleted, _ = RiderDeliveryMapping.objects.filter(
            expires_at__lte=now or timezone.now()
        ).delete()
        return deleted


class DjangoDeliveryStore:
    """
    Delivery status transitions driven by the sequencer.

    Both transitions are conditional updates on "still pending with no
    rider", so a racing acceptance and exhaustion can never both apply.
    Operators are told about the outcome by the sequencer, once it has
    released the delivery lock.
    """

    def is_unassigned(self, delivery_id: int) -> bool:
        return Delivery.objects.filter(UNASSIGNED, id=delivery_id).exists()

    def mark_assigned(self, delivery_id: int, rider_id: int) -> bool:
        now = timezone.now()
        updated = Delivery.objects.filter(UNASSIGNED, id=delivery_id).update(
            rider_id=rider_id,
            status="accepted",
            accepted_at=now,
            updated_at=now,
        )
        return bool(updated)

    def mark_exhausted(self, delivery_id: int) -> bool:
        updated = Delivery.objects.filter(UNASSIGNED, id=delivery_id).update(
            status="no_riders",
            updated_at=timezone.now(),
        )
        return bool(updated)
