"""
Delivery management service - Delivery lifecycle operations.

This module handles:
    - Creating deliveries and starting rider dispatch
    - Rider replies to offers (review / accept / decline)
    - Operator status updates and re-dispatch
    - Pickup handover OTPs
"""

from .lifecycle import (
    DeliveryResult,
    create_delivery,
    update_delivery_status,
    redispatch_delivery,
    review_offer,
    accept_offer,
    decline_offer,
    generate_delivery_otp,
    verify_delivery_otp,
)

from .exceptions import (
    DeliveryNotFoundError,
    DeliveryExistsError,
    AreaNotFoundError,
    RiderNotFoundError,
    NoActiveOfferError,
    DeliveryAlreadyAssignedError,
    DeliveryNotDispatchableError,
    InvalidStatusError,
    InvalidOtpError,
)

__all__ = [
    # Lifecycle operations
    "DeliveryResult",
    "create_delivery",
    "update_delivery_status",
    "redispatch_delivery",
    "review_offer",
    "accept_offer",
    "decline_offer",
    "generate_delivery_otp",
    "verify_delivery_otp",
    # Exceptions
    "DeliveryNotFoundError",
    "DeliveryExistsError",
    "AreaNotFoundError",
    "RiderNotFoundError",
    "NoActiveOfferError",
    "DeliveryAlreadyAssignedError",
    "DeliveryNotDispatchableError",
    "InvalidStatusError",
    "InvalidOtpError",
]
