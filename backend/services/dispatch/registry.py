"""
Registry of in-flight delivery offers.

The registry is an ordinary object owned by the dispatcher (and through it by
the ``deliveries`` app config), never module state. Mutations for one
delivery are serialized with a striped lock so a timeout-driven advance and an
incoming acceptance can't interleave.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .exceptions import DispatchAlreadyActiveError
from .offers import DeliveryOffer


class OfferRegistry:
    def __init__(self, stripes: int = 64):
        self._offers: Dict[int, DeliveryOffer] = {}
        self._guard = threading.Lock()
        self._stripes = [threading.RLock() for _ in range(stripes)]

    @contextmanager
    def locked(self, delivery_id: int) -> Iterator[None]:
        """Hold the single-writer lock for ``delivery_id``."""
        lock = self._stripes[hash(delivery_id) % len(self._stripes)]
        with lock:
            yield

    def add(self, offer) -> None:
        with self._guard:
            if offer.delivery_id in self._offers:
                raise DispatchAlreadyActiveError(
                    f"Delivery {offer.delivery_id} is already being dispatched"
                )
            self._offers[offer.delivery_id] = offer

    def get(self, delivery_id: int) -> Optional[DeliveryOffer]:
        with self._guard:
            return self._offers.get(delivery_id)

    def pop(self, delivery_id: int) -> Optional[DeliveryOffer]:
        with self._guard:
            return self._offers.pop(delivery_id, None)

    def is_current(self, offer, cursor: int) -> bool:
        """True if ``offer`` is still registered and still waiting on ``cursor``."""
        with self._guard:
            return self._offers.get(offer.delivery_id) is offer and offer.cursor == cursor

    def values(self) -> List[DeliveryOffer]:
        with self._guard:
            return list(self._offers.values())

    def __len__(self) -> int:
        with self._guard:
            return len(self._offers)

    def __contains__(self, delivery_id) -> bool:
        with self._guard:
            return delivery_id in self._offers
