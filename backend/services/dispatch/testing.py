"""
Deterministic doubles for exercising the sequencer.

``ManualScheduler`` only runs callbacks when told to advance, and moves a
``ManualClock`` along with it, so a 60 second offer window can be crossed
without waiting for it.
"""

import heapq
import itertools
from datetime import datetime, timedelta, timezone as dt_timezone

from common.utils.phone import normalize_phone, strip_plus
from .exceptions import TransportError
from .offers import MappingRecord
from .scheduling import ScheduledTask, Scheduler


class ManualClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 7, 15, 12, 0, tzinfo=dt_timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _ManualTask(ScheduledTask):
    def __init__(self, due, func, args):
        self.due = due
        self.func = func
        self.args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self):
        return self._cancelled


class ManualScheduler(Scheduler):
    def __init__(self, clock: ManualClock = None):
        self.clock = clock or ManualClock()
        self.elapsed = 0.0
        self.sleeps = []
        self._queue = []
        self._seq = itertools.count()

    def call_later(self, delay, func, *args):
        task = _ManualTask(self.elapsed + max(0.0, float(delay)), func, args)
        heapq.heappush(self._queue, (task.due, next(self._seq), task))
        return task

    def advance(self, seconds: float = 0) -> int:
        """Run every task due within ``seconds`` from now, in due order."""
        target = self.elapsed + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self._move_to(due)
            task.func(*task.args)
            ran += 1
        self._move_to(target)
        return ran

    def run_pending(self) -> int:
        return self.advance(0)

    def sleep(self, seconds: float) -> None:
        """Backoff sleep: time passes but no callbacks run."""
        self.sleeps.append(seconds)
        self._move_to(self.elapsed + seconds)

    def pending(self):
        return sorted(
            (task for _, _, task in self._queue if not task.cancelled),
            key=lambda task: task.due,
        )

    def shutdown(self):
        for _, _, task in self._queue:
            task.cancel()
        self._queue.clear()

    def _move_to(self, when: float) -> None:
        if when > self.elapsed:
            self.clock.advance(when - self.elapsed)
            self.elapsed = when


class InMemoryMappingStore:
    def __init__(self):
        self.records = {}
        self.fail_writes = False

    def upsert(self, phone, delivery_id, expires_at):
        if self.fail_writes:
            raise RuntimeError("mapping store unavailable")
        self.records[phone] = MappingRecord(phone=phone, delivery_id=delivery_id, expires_at=expires_at)

    def resolve(self, phone):
        return self.records.get(phone)

    def delete(self, phone, delivery_id):
        record = self.records.get(phone)
        if record is None or record.delivery_id != delivery_id:
            return False
        del self.records[phone]
        return True

    def purge_expired(self, now):
        expired = [phone for phone, record in self.records.items() if record.expires_at <= now]
        for phone in expired:
            del self.records[phone]
        return len(expired)


class InMemoryDeliveryStore:
    def __init__(self, *delivery_ids):
        self.statuses = {delivery_id: "pending" for delivery_id in delivery_ids}
        self.riders = {}

    def add(self, delivery_id, status="pending"):
        self.statuses[delivery_id] = status

    def is_unassigned(self, delivery_id):
        return self.statuses.get(delivery_id) == "pending" and delivery_id not in self.riders

    def mark_assigned(self, delivery_id, rider_id):
        if not self.is_unassigned(delivery_id):
            return False
        self.statuses[delivery_id] = "accepted"
        self.riders[delivery_id] = rider_id
        return True

    def mark_exhausted(self, delivery_id):
        if not self.is_unassigned(delivery_id):
            return False
        self.statuses[delivery_id] = "no_riders"
        return True


class ScriptedTransport:
    """Records every attempt; raises ``TransportError`` for ``failing`` phones."""

    def __init__(self, failing=()):
        self.failing = {strip_plus(phone) for phone in failing}
        self.attempts = []
        self.delivered = []

    def format_recipient(self, phone):
        return strip_plus(phone)

    def send(self, recipient, context, timeout):
        self.attempts.append((recipient, dict(context), timeout))
        if recipient in self.failing:
            raise TransportError("HTTP 500: Internal Server Error")
        self.delivered.append(recipient)

    def delivered_phones(self):
        return [normalize_phone(recipient) for recipient in self.delivered]
