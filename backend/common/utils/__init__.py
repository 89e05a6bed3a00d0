"""Common utility functions."""

from .geo import calculate_distance, parse_location
from .phone import normalize_phone, strip_plus

__all__ = [
    "calculate_distance",
    "parse_location",
    "normalize_phone",
    "strip_plus",
]
