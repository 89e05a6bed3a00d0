"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .ops_consumer import DeliveryOpsConsumer

__all__ = [
    "BaseConsumer",
    "DeliveryOpsConsumer",
]
