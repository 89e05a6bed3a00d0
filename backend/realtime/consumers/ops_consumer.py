"""Operators' live feed of dispatch outcomes."""

import logging
from typing import Any, Dict

from .base import BaseConsumer
from realtime.broadcast import OPERATORS_GROUP

logger = logging.getLogger(__name__)


class DeliveryOpsConsumer(BaseConsumer):
    """
    Staff-only feed of dispatch events.

    Client -> server:
        {"type": "ping"}
    Server -> client:
        delivery_assigned, delivery_exhausted, delivery_cancelled
    """

    def is_allowed(self) -> bool:
        return bool(getattr(self.user, "is_staff", False))

    def get_groups(self):
        return [OPERATORS_GROUP]

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "ping":
            await self.send_json({"type": "pong"})
            return
        await super().handle_message(msg_type, data)

    # ---------------------- Group Event Handlers ----------------------

    async def delivery_assigned(self, event):
        """A rider accepted a delivery."""
        await self.send_json({
            "type": "delivery_assigned",
            "delivery_id": event.get("delivery_id"),
            "rider_id": event.get("rider_id"),
            "timestamp": event.get("timestamp"),
        })

    async def delivery_exhausted(self, event):
        """Every candidate was offered the delivery and none accepted."""
        await self.send_json({
            "type": "delivery_exhausted",
            "delivery_id": event.get("delivery_id"),
            "message": event.get("message", "No riders accepted"),
            "timestamp": event.get("timestamp"),
        })

    async def delivery_cancelled(self, event):
        """An operator cancelled the delivery."""
        await self.send_json({
            "type": "delivery_cancelled",
            "delivery_id": event.get("delivery_id"),
            "message": event.get("message", ""),
            "timestamp": event.get("timestamp"),
        })
