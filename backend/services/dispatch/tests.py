import threading
from datetime import timedelta

from django.test import SimpleTestCase

from .exceptions import DispatchAlreadyActiveError, RetryExhaustedError, TransportError
from .offers import Candidate, DeliveryOffer
from .registry import OfferRegistry
from .retry import RetryPolicy, call_with_retry
from .scheduling import TimerScheduler
from .sequencer import (
	ACCEPTED,
	ADVANCED,
	ALREADY_ASSIGNED,
	EXHAUSTED,
	NOT_CURRENT,
	UNRESOLVED,
	DispatchSequencer,
)
from .testing import (
	InMemoryDeliveryStore,
	InMemoryMappingStore,
	ManualClock,
	ManualScheduler,
	ScriptedTransport,
)

ALI = Candidate(rider_id=11, phone="+971500000001", name="Ali")
SARA = Candidate(rider_id=12, phone="+971500000002", name="Sara")
OMAR = Candidate(rider_id=13, phone="+971500000003", name="Omar")


class RetryCombinatorTests(SimpleTestCase):
	def setUp(self):
		self.sleeps = []
		self.policy = RetryPolicy(attempts=3, base_delay=1.0, timeout=10.0)

	def test_first_success_does_not_sleep(self):
		result = call_with_retry(lambda timeout: "ok", self.policy, sleep=self.sleeps.append)

		self.assertEqual(result, "ok")
		self.assertEqual(self.sleeps, [])

	def test_backs_off_exponentially_and_passes_timeout(self):
		timeouts = []

		def flaky(timeout):
			timeouts.append(timeout)
			if len(timeouts) < 3:
				raise TransportError("HTTP 502: Bad Gateway")
			return "sent"

		with self.assertLogs("services.dispatch.retry", level="WARNING"):
			result = call_with_retry(flaky, self.policy, retry_on=(TransportError,), sleep=self.sleeps.append)

		self.assertEqual(result, "sent")
		self.assertEqual(self.sleeps, [1.0, 2.0])
		self.assertEqual(timeouts, [10.0, 10.0, 10.0])

	def test_raises_retry_exhausted_chained_to_last_error(self):
		errors = [TransportError("first"), TransportError("second"), TransportError("third")]

		def always_fails(timeout):
			raise errors.pop(0)

		with self.assertLogs("services.dispatch.retry", level="WARNING"):
			with self.assertRaises(RetryExhaustedError) as ctx:
				call_with_retry(always_fails, self.policy, retry_on=(TransportError,), sleep=self.sleeps.append)

		self.assertEqual(ctx.exception.attempts, 3)
		self.assertEqual(str(ctx.exception.last_error), "third")
		self.assertIs(ctx.exception.__cause__, ctx.exception.last_error)
		self.assertEqual(self.sleeps, [1.0, 2.0])

	def test_unlisted_errors_propagate_without_retrying(self):
		calls = []

		def broken(timeout):
			calls.append(timeout)
			raise ValueError("bad payload")

		with self.assertRaises(ValueError):
			call_with_retry(broken, self.policy, retry_on=(TransportError,), sleep=self.sleeps.append)

		self.assertEqual(len(calls), 1)
		self.assertEqual(self.sleeps, [])

	def test_rejects_policy_without_attempts(self):
		with self.assertRaises(ValueError):
			call_with_retry(lambda timeout: None, RetryPolicy(attempts=0))


class OfferRegistryTests(SimpleTestCase):
	def test_add_rejects_second_offer_for_same_delivery(self):
		registry = OfferRegistry()
		registry.add(DeliveryOffer(delivery_id=1, candidates=(ALI,)))

		with self.assertRaises(DispatchAlreadyActiveError):
			registry.add(DeliveryOffer(delivery_id=1, candidates=(SARA,)))
		self.assertEqual(len(registry), 1)

	def test_is_current_checks_identity_and_cursor(self):
		registry = OfferRegistry()
		offer = DeliveryOffer(delivery_id=1, candidates=(ALI, SARA))
		registry.add(offer)

		self.assertTrue(registry.is_current(offer, 0))
		self.assertFalse(registry.is_current(offer, 1))
		self.assertFalse(registry.is_current(DeliveryOffer(delivery_id=1, candidates=(ALI,)), 0))

		registry.pop(1)
		self.assertFalse(registry.is_current(offer, 0))
		self.assertNotIn(1, registry)


class TimerSchedulerTests(SimpleTestCase):
	def test_runs_callback_after_delay(self):
		scheduler = TimerScheduler()
		fired = threading.Event()

		scheduler.call_later(0.01, fired.set)

		self.assertTrue(fired.wait(2))

	def test_cancelled_task_never_runs(self):
		scheduler = TimerScheduler()
		fired = threading.Event()

		task = scheduler.call_later(0.2, fired.set)
		task.cancel()
		task.cancel()

		self.assertTrue(task.cancelled)
		self.assertFalse(fired.wait(0.4))

	def test_cancelled_tasks_are_released(self):
		scheduler = TimerScheduler()

		for _ in range(50):
			scheduler.call_later(30, lambda: None).cancel()

		self.assertEqual(scheduler.pending_count(), 0)

	def test_finished_task_is_released(self):
		scheduler = TimerScheduler()
		fired = threading.Event()

		scheduler.call_later(0.01, fired.set)

		self.assertTrue(fired.wait(2))
		self.assertEqual(scheduler.pending_count(), 0)

	def test_shutdown_cancels_pending_tasks(self):
		scheduler = TimerScheduler()
		fired = threading.Event()

		task = scheduler.call_later(0.2, fired.set)
		scheduler.shutdown()

		self.assertTrue(task.cancelled)
		self.assertFalse(fired.wait(0.4))


class DispatchSequencerTests(SimpleTestCase):
	def setUp(self):
		self.clock = ManualClock()
		self.started_at = self.clock()
		self.scheduler = ManualScheduler(self.clock)
		self.mappings = InMemoryMappingStore()
		self.deliveries = InMemoryDeliveryStore(1, 2)

	def build(self, transport=None, notifier=None):
		self.transport = transport or ScriptedTransport()
		return DispatchSequencer(
			transport=self.transport,
			mapping_store=self.mappings,
			delivery_store=self.deliveries,
			scheduler=self.scheduler,
			offer_timeout=60,
			mapping_ttl=300,
			failure_delay=1,
			clock=self.clock,
			sleep=self.scheduler.sleep,
			notifier=notifier,
		)

	# ---------------------- Sequencing ----------------------

	def test_start_dispatch_returns_before_any_notification(self):
		sequencer = self.build()

		result = sequencer.start_dispatch(1, [ALI, SARA, OMAR], {"order_id": "ORD-1"})

		self.assertTrue(result.started)
		self.assertEqual(result.candidate_count, 3)
		self.assertEqual(self.transport.attempts, [])
		self.assertEqual(sequencer.get_offer(1).cursor, 0)

	def test_first_rider_notified_and_mapped(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA], {"order_id": "ORD-1"})

		self.scheduler.run_pending()

		recipient, context, timeout = self.transport.attempts[0]
		self.assertEqual(recipient, "971500000001")
		self.assertEqual(timeout, 10.0)
		self.assertEqual(context["order_id"], "ORD-1")
		self.assertEqual(context["delivery_id"], 1)
		self.assertEqual(context["rider_name"], "Ali")

		record = self.mappings.records["+971500000001"]
		self.assertEqual(record.delivery_id, 1)
		self.assertEqual(record.expires_at, self.started_at + timedelta(seconds=300))

	def test_timeout_advances_to_next_rider_exactly_once(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA, OMAR])
		self.scheduler.run_pending()

		self.scheduler.advance(59)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone])

		self.scheduler.advance(1)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone])
		self.assertEqual(sequencer.get_offer(1).cursor, 1)
		self.assertEqual(len(self.scheduler.pending()), 1)

		self.scheduler.advance(59)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone])

	def test_send_failure_backs_off_then_moves_on_after_one_second(self):
		sequencer = self.build(ScriptedTransport(failing=[ALI.phone]))
		sequencer.start_dispatch(1, [ALI, SARA])

		with self.assertLogs("services.dispatch", level="WARNING"):
			self.scheduler.run_pending()

		self.assertEqual([attempt[0] for attempt in self.transport.attempts], ["971500000001"] * 3)
		self.assertEqual(self.scheduler.sleeps, [1.0, 2.0])
		self.assertNotIn(ALI.phone, self.mappings.records)

		self.scheduler.advance(0.5)
		self.assertEqual(self.transport.delivered_phones(), [])

		self.scheduler.advance(0.5)
		self.assertEqual(self.transport.delivered_phones(), [SARA.phone])
		self.assertEqual(self.scheduler.elapsed, 4)

	def test_failed_mapping_write_still_waits_for_timeout(self):
		sequencer = self.build()
		self.mappings.fail_writes = True
		sequencer.start_dispatch(1, [ALI, SARA])

		with self.assertLogs("services.dispatch.sequencer", level="ERROR"):
			self.scheduler.run_pending()

		self.assertEqual(self.mappings.records, {})
		self.assertEqual(sequencer.accept(ALI.phone, ALI.rider_id).reason, UNRESOLVED)

		self.scheduler.advance(60)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone])

	# ---------------------- Acceptance ----------------------

	def test_accept_assigns_and_cancels_timeout(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()

		result = sequencer.accept("0500000001", ALI.rider_id)

		self.assertTrue(result.accepted)
		self.assertEqual(result.reason, ACCEPTED)
		self.assertEqual(result.delivery_id, 1)
		self.assertEqual(self.deliveries.riders[1], ALI.rider_id)
		self.assertIsNone(sequencer.get_offer(1))
		self.assertEqual(self.scheduler.pending(), [])

		self.scheduler.advance(120)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone])

	def test_accept_is_idempotent(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		self.assertTrue(sequencer.accept(ALI.phone, ALI.rider_id).accepted)
		repeat = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertFalse(repeat.accepted)
		self.assertEqual(repeat.reason, UNRESOLVED)
		self.assertEqual(self.deliveries.riders, {1: ALI.rider_id})

	def test_accept_drops_the_mapping(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertNotIn(ALI.phone, self.mappings.records)

	def test_accept_keeps_mapping_rewritten_for_another_delivery(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()
		record = sequencer.resolve_offer(ALI.phone)
		self.mappings.upsert(ALI.phone, 2, record.expires_at)

		sequencer._forget_mapping(record)

		self.assertEqual(self.mappings.records[ALI.phone].delivery_id, 2)

	def test_earlier_rider_loses_once_delivery_is_assigned(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()
		self.scheduler.advance(60)

		self.assertTrue(sequencer.accept(SARA.phone, SARA.rider_id).accepted)
		late = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertEqual(late.reason, ALREADY_ASSIGNED)
		self.assertEqual(self.deliveries.riders[1], SARA.rider_id)

	def test_earlier_rider_can_accept_while_still_unassigned(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()
		self.scheduler.advance(60)

		result = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertTrue(result.accepted)
		self.assertIsNone(sequencer.get_offer(1))
		self.assertEqual(self.scheduler.pending(), [])

	def test_mapping_is_last_write_wins_across_deliveries(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		sequencer.start_dispatch(2, [ALI])
		self.scheduler.run_pending()

		self.assertEqual(self.mappings.records[ALI.phone].delivery_id, 2)

		result = sequencer.accept(ALI.phone, ALI.rider_id)
		self.assertEqual(result.delivery_id, 2)
		self.assertEqual(self.deliveries.statuses[1], "pending")
		self.assertIsNotNone(sequencer.get_offer(1))

	def test_mapping_expires_exactly_at_ttl(self):
		sequencer = self.build()
		self.mappings.upsert(ALI.phone, 1, self.clock())

		self.assertIsNone(sequencer.resolve_offer(ALI.phone))

	# ---------------------- Decline / cancel ----------------------

	def test_decline_moves_straight_to_next_rider(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA, OMAR])
		self.scheduler.run_pending()

		result = sequencer.decline(ALI.phone)
		self.scheduler.run_pending()

		self.assertTrue(result.advanced)
		self.assertEqual(result.reason, ADVANCED)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone])

		self.scheduler.advance(60)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone, OMAR.phone])

	def test_rider_cannot_accept_after_declining(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()

		sequencer.decline(ALI.phone)
		result = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertFalse(result.accepted)
		self.assertEqual(result.reason, UNRESOLVED)
		self.assertNotIn(1, self.deliveries.riders)
		self.assertEqual(sequencer.get_offer(1).cursor, 1)

	def test_out_of_turn_decline_still_drops_the_mapping(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()
		self.scheduler.advance(60)

		sequencer.decline(ALI.phone)

		self.assertEqual(sequencer.accept(ALI.phone, ALI.rider_id).reason, UNRESOLVED)
		self.assertTrue(sequencer.accept(SARA.phone, SARA.rider_id).accepted)

	def test_decline_from_earlier_rider_is_ignored(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()
		self.scheduler.advance(60)

		result = sequencer.decline(ALI.phone)

		self.assertFalse(result.advanced)
		self.assertEqual(result.reason, NOT_CURRENT)
		self.assertEqual(sequencer.get_offer(1).cursor, 1)

	def test_last_decline_exhausts_the_offer(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		result = sequencer.decline(ALI.phone)

		self.assertEqual(result.reason, EXHAUSTED)
		self.assertEqual(self.deliveries.statuses[1], "no_riders")
		self.assertIsNone(sequencer.get_offer(1))

	def test_cancel_stops_further_notifications(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()

		self.assertTrue(sequencer.cancel(1))
		self.assertFalse(sequencer.cancel(1))

		self.scheduler.advance(120)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone])
		self.assertEqual(self.deliveries.statuses[1], "pending")

	def test_duplicate_dispatch_is_rejected(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])

		with self.assertRaises(DispatchAlreadyActiveError):
			sequencer.start_dispatch(1, [SARA])

	def test_stale_timer_does_not_advance_offer(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA, OMAR])
		self.scheduler.run_pending()
		self.scheduler.advance(60)
		offer = sequencer.get_offer(1)

		sequencer._on_timeout(offer, 0)
		self.scheduler.run_pending()

		self.assertEqual(offer.cursor, 1)
		self.assertEqual(self.transport.delivered_phones(), [ALI.phone, SARA.phone])

	def test_shutdown_drops_all_offers(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI])
		sequencer.start_dispatch(2, [SARA])

		sequencer.shutdown()
		self.scheduler.advance(10)

		self.assertEqual(sequencer.active_offers(), [])
		self.assertEqual(self.transport.attempts, [])

	# ---------------------- Operator events ----------------------

	def _recording_notifier(self, events):
		def notifier(event_type, delivery_id, message, extra=None):
			acquired = []

			def grab():
				with self.sequencer.registry.locked(delivery_id):
					acquired.append(True)

			thread = threading.Thread(target=grab)
			thread.start()
			thread.join(1)
			events.append((event_type, delivery_id, extra, bool(acquired)))

		return notifier

	def test_acceptance_is_announced_outside_the_lock(self):
		events = []
		self.sequencer = self.build(notifier=self._recording_notifier(events))
		self.sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		self.sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertEqual(events, [("delivery_assigned", 1, {"rider_id": ALI.rider_id}, True)])

	def test_exhaustion_is_announced_outside_the_lock(self):
		events = []
		self.sequencer = self.build(notifier=self._recording_notifier(events))
		self.sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		self.scheduler.advance(60)

		self.assertEqual(events, [("delivery_exhausted", 1, None, True)])

	def test_failing_notifier_does_not_undo_acceptance(self):
		def notifier(*args, **kwargs):
			raise RuntimeError("channel layer down")

		sequencer = self.build(notifier=notifier)
		sequencer.start_dispatch(1, [ALI])
		self.scheduler.run_pending()

		with self.assertLogs("services.dispatch", level="ERROR"):
			result = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertTrue(result.accepted)
		self.assertEqual(self.deliveries.riders[1], ALI.rider_id)

	# ---------------------- End to end ----------------------

	def test_two_failed_sends_then_third_rider_accepts(self):
		sequencer = self.build(ScriptedTransport(failing=[ALI.phone, SARA.phone]))
		sequencer.start_dispatch(1, [ALI, SARA, OMAR])

		with self.assertLogs("services.dispatch", level="WARNING"):
			self.scheduler.run_pending()
			self.scheduler.advance(10)

		self.assertEqual(self.scheduler.sleeps, [1.0, 2.0, 1.0, 2.0])
		self.assertEqual(self.transport.delivered_phones(), [OMAR.phone])

		result = sequencer.accept(OMAR.phone, OMAR.rider_id)

		self.assertTrue(result.accepted)
		self.assertEqual(self.deliveries.riders[1], OMAR.rider_id)
		self.assertEqual(self.deliveries.statuses[1], "accepted")
		self.assertIsNone(sequencer.get_offer(1))

	def test_nobody_accepts_within_two_windows(self):
		sequencer = self.build()
		sequencer.start_dispatch(1, [ALI, SARA])
		self.scheduler.run_pending()

		self.scheduler.advance(60)
		self.assertIsNotNone(sequencer.get_offer(1))

		self.scheduler.advance(60)

		self.assertIsNone(sequencer.get_offer(1))
		self.assertEqual(self.scheduler.elapsed, 120)
		self.assertEqual(self.deliveries.statuses[1], "no_riders")
		self.assertNotIn(1, self.deliveries.riders)
		self.assertEqual(self.scheduler.pending(), [])

	def test_no_candidates_returns_immediately(self):
		sequencer = self.build()

		result = sequencer.start_dispatch(1, [])

		self.assertFalse(result.started)
		self.assertEqual(result.message, "No available riders found")
		self.assertIsNone(sequencer.get_offer(1))
		self.assertEqual(self.mappings.records, {})
		self.assertEqual(self.scheduler.pending(), [])

	def test_expired_mapping_cannot_accept(self):
		sequencer = self.build()
		self.mappings.upsert(ALI.phone, 1, self.clock() - timedelta(seconds=1))

		result = sequencer.accept(ALI.phone, ALI.rider_id)

		self.assertFalse(result.accepted)
		self.assertEqual(result.reason, UNRESOLVED)
		self.assertEqual(self.deliveries.riders, {})
		self.assertEqual(self.deliveries.statuses[1], "pending")
