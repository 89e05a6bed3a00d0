"""
Candidate rider source.

Lists the riders a delivery may be offered to, ranked closest first.
"""

import logging
from typing import List, Optional, Tuple

from common.utils.geo import calculate_distance
from common.utils.phone import normalize_phone
from services.dispatch.offers import Candidate
from riders.models import Rider

logger = logging.getLogger(__name__)

# Delivery service kinds map onto the rider type that can serve them
SERVICE_KIND_RIDER_TYPES = {
    'delivery': 'delivery',
    'ride_service': 'ride_service',
}


def filter_riders(available=None, rider_type=None, area_id=None):
    """Rider queryset filtered the way the listing endpoint accepts."""
    riders = Rider.objects.prefetch_related('areas')
    if available is not None:
        riders = riders.filter(available=available)
    if rider_type:
        riders = riders.filter(rider_type=rider_type)
    if area_id:
        riders = riders.filter(areas__id=area_id)
    return riders.distinct().order_by('id')


def list_candidates(
    area_id: Optional[int],
    service_kind: str = 'delivery',
    pickup: Optional[Tuple[float, float]] = None,
) -> List[Candidate]:
    """
    Build the ordered candidate list for one delivery.
    
    Args:
        area_id: Service area the delivery belongs to (None = any area)
        service_kind: Kind of job being dispatched
        pickup: (lat, lng) of the pickup, if known
    
    Returns:
        Available riders of the right type, closest to the pickup first;
        riders without a known location follow in roster order
    """
    rider_type = SERVICE_KIND_RIDER_TYPES.get(service_kind, 'delivery')
    riders = list(filter_riders(available=True, rider_type=rider_type, area_id=area_id))

    located: List[tuple] = []
    unlocated: List[Rider] = []
    for rider in riders:
        if pickup and rider.current_latitude is not None and rider.current_longitude is not None:
            distance = calculate_distance(
                pickup[0],
                pickup[1],
                float(rider.current_latitude),
                float(rider.current_longitude),
            )
            located.append((distance, rider.id, rider))
        else:
            unlocated.append(rider)

    # Sort closest → farthest, ties by roster order
    located.sort(key=lambda item: (item[0], item[1]))
    ranked = [rider for (_, _, rider) in located] + unlocated

    logger.info(
        "Found %d candidate rider(s) for area %s (%s)",
        len(ranked), area_id, service_kind,
    )
    return [Candidate(rider_id=r.id, phone=r.phone, name=r.name) for r in ranked]


def find_rider_by_phone(phone: str) -> Optional[Rider]:
    return Rider.objects.filter(phone=normalize_phone(phone)).first()
