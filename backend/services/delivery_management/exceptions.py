"""Custom exceptions for delivery management."""


class DeliveryNotFoundError(Exception):
    """Raised when a delivery cannot be found."""
    pass


class DeliveryExistsError(Exception):
    """Raised when the order already has a delivery."""
    pass


class AreaNotFoundError(Exception):
    """Raised when the requested service area does not exist."""
    pass


class RiderNotFoundError(Exception):
    """Raised when no rider is registered with the given phone number."""
    pass


class NoActiveOfferError(Exception):
    """Raised when a rider's phone has no live delivery mapping."""
    pass


class DeliveryAlreadyAssignedError(Exception):
    """Raised when a delivery was already taken by another rider."""
    pass


class DeliveryNotDispatchableError(Exception):
    """Raised when a delivery is not in a state that can be offered to riders."""
    pass


class InvalidStatusError(Exception):
    """Raised when a delivery status update uses an unknown status."""
    pass


class InvalidOtpError(Exception):
    """Raised when no delivery holds the given OTP, or it has expired."""
    pass
