"""
Operator broadcasts for dispatch outcomes.

Dispatch outcomes (a rider accepted, every rider was tried, an operator
cancelled) are pushed to the ``delivery_ops`` group so dashboards can react
without polling delivery status.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.utils import timezone

logger = logging.getLogger(__name__)

OPERATORS_GROUP = "delivery_ops"


def notify_operators_event(
    event_type: str,
    delivery_id: int,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send a delivery event to every connected operator.
    
    Args:
        event_type: Handler name in consumer (delivery_assigned, delivery_exhausted, delivery_cancelled)
        delivery_id: Delivery the event is about
        message: Optional message to include
        extra: Additional payload data
    
    Returns:
        True if sent successfully, False otherwise
    """
    try:
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return False

        payload = {
            "type": event_type,
            "delivery_id": delivery_id,
            "timestamp": timezone.now().isoformat(),
            **(extra or {}),
        }
        if message:
            payload["message"] = message

        logger.debug("WS -> %s: %s", OPERATORS_GROUP, payload)
        async_to_sync(channel_layer.group_send)(OPERATORS_GROUP, payload)
        return True
    except Exception:
        logger.exception("Failed to notify operators about delivery %s", delivery_id)
        return False
