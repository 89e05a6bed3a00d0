"""
Outbound rider messaging.

This module handles:
    - Delivering delivery offers to riders through uChat sub-flows
"""

from .uchat import UChatTransport

__all__ = [
    "UChatTransport",
]
