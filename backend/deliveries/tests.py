from datetime import timedelta
from io import StringIO

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate
from unittest.mock import patch

from riders.models import Rider, ServiceArea
from services.dispatch import Candidate, DispatchSequencer
from services.dispatch.stores import DjangoDeliveryStore, DjangoMappingStore
from services.dispatch.testing import ManualClock, ManualScheduler, ScriptedTransport
from .models import Delivery, RiderDeliveryMapping
from .tasks import purge_expired_mappings_task
from .views import deliveries, delivery_otp, delivery_status, redispatch, rider_response


def build_test_dispatcher(transport=None, notifier=None):
	clock = ManualClock(timezone.now())
	scheduler = ManualScheduler(clock)
	dispatcher = DispatchSequencer(
		transport=transport or ScriptedTransport(),
		mapping_store=DjangoMappingStore(),
		delivery_store=DjangoDeliveryStore(),
		scheduler=scheduler,
		clock=clock,
		sleep=scheduler.sleep,
		notifier=notifier,
	)
	return dispatcher, scheduler


class DeliveryStoreTests(TestCase):
	def setUp(self):
		self.store = DjangoDeliveryStore()
		self.rider_one = Rider.objects.create(name='Ali', phone='0501111111')
		self.rider_two = Rider.objects.create(name='Sara', phone='0502222222')
		self.delivery = Delivery.objects.create(order_id=5001)

	def test_mark_assigned_applies_only_once(self):
		self.assertTrue(self.store.mark_assigned(self.delivery.id, self.rider_one.id))
		self.assertFalse(self.store.mark_assigned(self.delivery.id, self.rider_two.id))

		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.rider, self.rider_one)
		self.assertEqual(self.delivery.status, 'accepted')
		self.assertIsNotNone(self.delivery.accepted_at)
		self.assertFalse(self.store.is_unassigned(self.delivery.id))

	@patch('realtime.broadcast.notify_operators_event')
	def test_store_updates_do_not_broadcast(self, mock_notify):
		self.store.mark_assigned(self.delivery.id, self.rider_one.id)
		self.store.mark_exhausted(self.delivery.id)

		mock_notify.assert_not_called()

	def test_mark_exhausted_leaves_assigned_delivery_alone(self):
		self.store.mark_assigned(self.delivery.id, self.rider_one.id)

		self.assertFalse(self.store.mark_exhausted(self.delivery.id))
		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.status, 'accepted')

	def test_mark_exhausted_keeps_delivery_unassigned(self):
		self.assertTrue(self.store.mark_exhausted(self.delivery.id))

		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.status, 'no_riders')
		self.assertIsNone(self.delivery.rider)


class MappingStoreTests(TestCase):
	def setUp(self):
		self.store = DjangoMappingStore()
		self.first = Delivery.objects.create(order_id=6001)
		self.second = Delivery.objects.create(order_id=6002)

	def test_upsert_is_last_write_wins(self):
		expires_at = timezone.now() + timedelta(minutes=5)
		self.store.upsert('+971501111111', self.first.id, expires_at)
		self.store.upsert('+971501111111', self.second.id, expires_at)

		self.assertEqual(RiderDeliveryMapping.objects.count(), 1)
		record = self.store.resolve('+971501111111')
		self.assertEqual(record.delivery_id, self.second.id)
		self.assertEqual(record.expires_at, expires_at)

	def test_delete_only_forgets_matching_delivery(self):
		expires_at = timezone.now() + timedelta(minutes=5)
		self.store.upsert('+971501111111', self.first.id, expires_at)
		self.store.upsert('+971501111111', self.second.id, expires_at)

		self.assertFalse(self.store.delete('+971501111111', self.first.id))
		self.assertEqual(self.store.resolve('+971501111111').delivery_id, self.second.id)

		self.assertTrue(self.store.delete('+971501111111', self.second.id))
		self.assertIsNone(self.store.resolve('+971501111111'))

	def test_resolve_unknown_phone(self):
		self.assertIsNone(self.store.resolve('+971509999999'))

	def test_purge_removes_only_expired(self):
		now = timezone.now()
		self.store.upsert('+971501111111', self.first.id, now - timedelta(seconds=1))
		self.store.upsert('+971502222222', self.second.id, now + timedelta(minutes=5))

		self.assertEqual(self.store.purge_expired(now), 1)
		self.assertEqual(
			list(RiderDeliveryMapping.objects.values_list('phone', flat=True)),
			['+971502222222'],
		)


class DeliveryApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.operator = User.objects.create_user(
			username='ops',
			password='ops12345',
			is_staff=True
		)
		self.area = ServiceArea.objects.create(name='Dubai')
		self.empty_area = ServiceArea.objects.create(name='Fujairah')

		self.near_rider = Rider.objects.create(
			name='Ali',
			phone='0501111111',
			current_latitude=25.205000,
			current_longitude=55.271000
		)
		self.far_rider = Rider.objects.create(
			name='Sara',
			phone='0502222222',
			current_latitude=25.300000,
			current_longitude=55.400000
		)
		self.off_duty = Rider.objects.create(name='Omar', phone='0503333333', available=False)
		for rider in (self.near_rider, self.far_rider, self.off_duty):
			rider.areas.add(self.area)

		self.dispatcher, self.scheduler = build_test_dispatcher()
		patcher = patch('deliveries.views.get_dispatcher', return_value=self.dispatcher)
		patcher.start()
		self.addCleanup(patcher.stop)

	def _create_delivery(self, **kwargs):
		fields = {
			'order_id': 7001,
			'area': self.area,
			'pickup_latitude': 25.204800,
			'pickup_longitude': 55.270800,
			'customer_name': 'Customer',
		}
		fields.update(kwargs)
		return Delivery.objects.create(**fields)

	def _offer(self, delivery, *riders):
		candidates = [Candidate(rider_id=r.id, phone=r.phone, name=r.name) for r in riders]
		self.dispatcher.start_dispatch(delivery.id, candidates, {'order_id': delivery.order_id})
		self.scheduler.run_pending()

	def _reply(self, phone, reply, **headers):
		request = self.factory.patch(
			'/api/deliveries/rider/',
			{'phone': phone, 'status': reply},
			format='json',
			**headers
		)
		return rider_response(request)

	# ---------------------- Creation ----------------------

	def test_create_delivery_dispatches_closest_rider_after_commit(self):
		request = self.factory.post('/api/deliveries/', {
			'order_id': 7001,
			'area_id': self.area.id,
			'pickup_latitude': '25.204800',
			'pickup_longitude': '55.270800',
			'dropoff_address': 'Marina Walk',
		}, format='json')
		force_authenticate(request, user=self.operator)

		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			response = deliveries(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(len(callbacks), 1)
		self.assertEqual(
			[rider['id'] for rider in response.data['riders']],
			[self.near_rider.id, self.far_rider.id]
		)

		delivery_id = response.data['deliveryId']
		self.assertIsNotNone(self.dispatcher.get_offer(delivery_id))

		self.scheduler.run_pending()
		self.assertEqual(self.dispatcher.transport.delivered, ['971501111111'])
		mapping = RiderDeliveryMapping.objects.get(phone='+971501111111')
		self.assertEqual(mapping.delivery_id, delivery_id)

	@patch('realtime.broadcast.notify_operators_event')
	def test_create_delivery_without_riders(self, mock_notify):
		request = self.factory.post('/api/deliveries/', {
			'order_id': 7002,
			'area_id': self.empty_area.id,
		}, format='json')
		force_authenticate(request, user=self.operator)

		with self.captureOnCommitCallbacks(execute=True):
			response = deliveries(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['message'], 'No available riders found')
		self.assertEqual(response.data['riders'], [])
		self.assertEqual(response.data['delivery']['status'], 'no_riders')
		self.assertEqual(self.dispatcher.active_offers(), [])

		delivery = Delivery.objects.get(id=response.data['deliveryId'])
		self.assertEqual(delivery.status, 'no_riders')
		mock_notify.assert_called_once_with(
			'delivery_exhausted', delivery.id, 'No available riders found'
		)

	def test_create_delivery_rejects_duplicate_order(self):
		self._create_delivery()
		request = self.factory.post('/api/deliveries/', {'order_id': 7001}, format='json')
		force_authenticate(request, user=self.operator)

		response = deliveries(request)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(Delivery.objects.count(), 1)

	def test_create_delivery_unknown_area(self):
		request = self.factory.post('/api/deliveries/', {'order_id': 7003, 'area_id': 999}, format='json')
		force_authenticate(request, user=self.operator)

		response = deliveries(request)

		self.assertEqual(response.status_code, 404)
		self.assertFalse(Delivery.objects.filter(order_id=7003).exists())

	def test_operator_endpoints_require_authentication(self):
		request = self.factory.get('/api/deliveries/')

		response = deliveries(request)

		self.assertEqual(response.status_code, 401)

	def test_list_filters_by_status(self):
		self._create_delivery()
		self._create_delivery(order_id=7010, status='delivered')
		request = self.factory.get('/api/deliveries/', {'status': 'delivered'})
		force_authenticate(request, user=self.operator)

		response = deliveries(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual([d['order_id'] for d in response.data], [7010])

	# ---------------------- Rider replies ----------------------

	def test_reviewing_returns_order_details(self):
		delivery = self._create_delivery(dropoff_address='Marina Walk', dropoff_location='25.0800, 55.1400')
		self._offer(delivery, self.near_rider)

		response = self._reply('971501111111', 'REVIEWING')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['orderDetails']['order_id'], 7001)
		self.assertEqual(response.data['orderDetails']['area_name'], 'Dubai')
		self.assertEqual(response.data['orderDetails']['dropoff_address'], 'Marina Walk')
		self.assertEqual(response.data['orderDetails']['dropoff_coordinates'], {'lat': 25.08, 'lng': 55.14})

	def test_accept_assigns_delivery_to_rider(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider, self.far_rider)

		response = self._reply('971501111111', 'ACCEPTED')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['deliveryId'], delivery.id)
		self.assertEqual(response.data['riderName'], 'Ali')

		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'accepted')
		self.assertEqual(delivery.rider, self.near_rider)
		self.assertIsNone(self.dispatcher.get_offer(delivery.id))
		self.assertEqual(self.scheduler.pending(), [])

	def test_accept_announces_assignment_to_operators(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider)

		with patch.object(self.dispatcher, 'notifier') as notifier:
			self.assertEqual(self._reply('971501111111', 'ACCEPTED').status_code, 200)

		notifier.assert_called_once_with(
			'delivery_assigned',
			delivery.id,
			'Delivery accepted by rider',
			extra={'rider_id': self.near_rider.id},
		)
		self.assertFalse(RiderDeliveryMapping.objects.filter(delivery=delivery).exists())

	def test_accept_after_assignment_conflicts(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider, self.far_rider)
		self.scheduler.advance(60)

		self.assertEqual(self._reply('971502222222', 'ACCEPTED').status_code, 200)
		response = self._reply('971501111111', 'ACCEPTED')

		self.assertEqual(response.status_code, 409)
		self.assertFalse(response.data['success'])
		delivery.refresh_from_db()
		self.assertEqual(delivery.rider, self.far_rider)

	def test_accept_without_live_offer(self):
		response = self._reply('971501111111', 'ACCEPTED')

		self.assertEqual(response.status_code, 404)

	def test_accept_with_expired_mapping(self):
		delivery = self._create_delivery()
		DjangoMappingStore().upsert(
			self.near_rider.phone,
			delivery.id,
			self.dispatcher.clock() - timedelta(seconds=1)
		)

		response = self._reply('971501111111', 'ACCEPTED')

		self.assertEqual(response.status_code, 404)
		delivery.refresh_from_db()
		self.assertIsNone(delivery.rider)

	def test_accept_from_unknown_phone(self):
		response = self._reply('971509999999', 'ACCEPTED')

		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'Rider not found')

	def test_decline_notifies_next_rider(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider, self.far_rider)

		response = self._reply('971501111111', 'DECLINED')
		self.scheduler.run_pending()

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'Delivery declined, notifying next rider')
		self.assertEqual(self.dispatcher.transport.delivered, ['971501111111', '971502222222'])

	def test_rider_cannot_accept_after_declining(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider, self.far_rider)

		self.assertEqual(self._reply('971501111111', 'DECLINED').status_code, 200)
		response = self._reply('971501111111', 'ACCEPTED')

		self.assertEqual(response.status_code, 404)
		delivery.refresh_from_db()
		self.assertIsNone(delivery.rider)
		self.assertEqual(delivery.status, 'pending')

	def test_last_decline_marks_no_riders(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider)

		response = self._reply('971501111111', 'DECLINED')

		self.assertEqual(response.data['message'], 'All riders declined the delivery')
		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'no_riders')

	@override_settings(DISPATCH_WEBHOOK_TOKEN='uchat-secret')
	def test_rider_reply_requires_webhook_token(self):
		self.assertEqual(self._reply('971501111111', 'ACCEPTED').status_code, 403)
		self.assertEqual(
			self._reply('971501111111', 'ACCEPTED', HTTP_X_API_KEY='uchat-secret').status_code,
			404
		)

	# ---------------------- Status / redispatch ----------------------

	@patch('realtime.broadcast.notify_operators_event')
	def test_cancel_status_stops_dispatch(self, mock_notify):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider, self.far_rider)
		request = self.factory.put(
			'/api/deliveries/status/',
			{'delivery_id': delivery.id, 'status': 'cancelled'},
			format='json'
		)
		force_authenticate(request, user=self.operator)

		response = delivery_status(request)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['dispatchCancelled'])
		self.assertIsNone(self.dispatcher.get_offer(delivery.id))
		mock_notify.assert_called_once_with('delivery_cancelled', delivery.id, 'Delivery cancelled')

		self.scheduler.advance(120)
		self.assertEqual(self.dispatcher.transport.delivered, ['971501111111'])

	def test_delivered_status_stamps_time(self):
		delivery = self._create_delivery(status='in_transit', rider=self.near_rider)
		request = self.factory.put(
			'/api/deliveries/status/',
			{'delivery_id': delivery.id, 'status': 'delivered'},
			format='json'
		)
		force_authenticate(request, user=self.operator)

		response = delivery_status(request)

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['dispatchCancelled'])
		delivery.refresh_from_db()
		self.assertIsNotNone(delivery.delivered_at)

	def test_status_update_rejects_unknown_status(self):
		delivery = self._create_delivery()
		request = self.factory.put(
			'/api/deliveries/status/',
			{'delivery_id': delivery.id, 'status': 'lost'},
			format='json'
		)
		force_authenticate(request, user=self.operator)

		self.assertEqual(delivery_status(request).status_code, 400)

	def test_status_update_unknown_delivery(self):
		request = self.factory.put(
			'/api/deliveries/status/',
			{'delivery_id': 999, 'status': 'cancelled'},
			format='json'
		)
		force_authenticate(request, user=self.operator)

		self.assertEqual(delivery_status(request).status_code, 404)

	def test_redispatch_after_no_riders(self):
		delivery = self._create_delivery(status='no_riders')
		request = self.factory.post('/api/deliveries/%d/redispatch/' % delivery.id)
		force_authenticate(request, user=self.operator)

		with self.captureOnCommitCallbacks(execute=True):
			response = redispatch(request, delivery_id=delivery.id)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['success'])
		self.assertEqual(response.data['riderCandidates'], 2)
		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'pending')
		self.assertIsNotNone(self.dispatcher.get_offer(delivery.id))

	def test_redispatch_without_candidates_stays_no_riders(self):
		delivery = self._create_delivery(area=self.empty_area, status='no_riders')
		request = self.factory.post('/api/deliveries/%d/redispatch/' % delivery.id)
		force_authenticate(request, user=self.operator)

		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			response = redispatch(request, delivery_id=delivery.id)

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['success'])
		self.assertEqual(response.data['riderCandidates'], 0)
		self.assertEqual(callbacks, [])
		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'no_riders')
		self.assertIsNone(self.dispatcher.get_offer(delivery.id))

	@patch('realtime.broadcast.notify_operators_event')
	def test_redispatch_pending_without_candidates_marks_no_riders(self, mock_notify):
		delivery = self._create_delivery(area=self.empty_area)
		request = self.factory.post('/api/deliveries/%d/redispatch/' % delivery.id)
		force_authenticate(request, user=self.operator)

		with self.captureOnCommitCallbacks(execute=True):
			response = redispatch(request, delivery_id=delivery.id)

		self.assertFalse(response.data['success'])
		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'no_riders')
		mock_notify.assert_called_once_with(
			'delivery_exhausted', delivery.id, 'No available riders found'
		)

	def test_redispatch_rejects_assigned_delivery(self):
		delivery = self._create_delivery(status='accepted', rider=self.near_rider)
		request = self.factory.post('/api/deliveries/%d/redispatch/' % delivery.id)
		force_authenticate(request, user=self.operator)

		self.assertEqual(redispatch(request, delivery_id=delivery.id).status_code, 409)

	def test_redispatch_rejects_delivery_still_being_offered(self):
		delivery = self._create_delivery()
		self._offer(delivery, self.near_rider)
		request = self.factory.post('/api/deliveries/%d/redispatch/' % delivery.id)
		force_authenticate(request, user=self.operator)

		self.assertEqual(redispatch(request, delivery_id=delivery.id).status_code, 409)


class DeliveryOtpTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.operator = User.objects.create_user(
			username='outlet',
			password='outlet12345',
			is_staff=True
		)
		self.rider = Rider.objects.create(name='Ali', phone='0501111111')
		self.delivery = Delivery.objects.create(order_id=9001, status='accepted', rider=self.rider)

	def _request_otp(self, delivery_id):
		request = self.factory.post('/api/deliveries/otp/', {'delivery_id': delivery_id}, format='json')
		force_authenticate(request, user=self.operator)
		return delivery_otp(request)

	def _verify(self, otp):
		request = self.factory.put('/api/deliveries/otp/', {'otp': otp}, format='json')
		force_authenticate(request, user=self.operator)
		return delivery_otp(request)

	def test_generate_issues_six_digit_code(self):
		before = timezone.now()
		response = self._request_otp(self.delivery.id)

		self.assertEqual(response.status_code, 200)
		otp = response.data['otp']
		self.assertRegex(otp, r'^\d{6}$')

		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.otp, otp)
		self.assertGreaterEqual(self.delivery.otp_expires_at, before + timedelta(minutes=120))
		self.assertLessEqual(self.delivery.otp_expires_at, timezone.now() + timedelta(minutes=120))

	def test_generate_unknown_delivery(self):
		self.assertEqual(self._request_otp(999).status_code, 404)

	def test_generate_requires_delivery_id(self):
		request = self.factory.post('/api/deliveries/otp/', {}, format='json')
		force_authenticate(request, user=self.operator)

		self.assertEqual(delivery_otp(request).status_code, 400)

	def test_generate_rejects_closed_delivery(self):
		delivery = Delivery.objects.create(order_id=9002, status='delivered', rider=self.rider)

		self.assertEqual(self._request_otp(delivery.id).status_code, 400)

	def test_verify_moves_delivery_in_transit(self):
		otp = self._request_otp(self.delivery.id).data['otp']

		response = self._verify(otp)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'OTP verified successfully')
		self.assertEqual(response.data['deliveryId'], self.delivery.id)
		self.assertEqual(response.data['delivery']['status'], 'in_transit')
		self.assertEqual(response.data['delivery']['rider']['id'], self.rider.id)

		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.status, 'in_transit')
		self.assertIsNone(self.delivery.otp)

	def test_code_is_single_use(self):
		otp = self._request_otp(self.delivery.id).data['otp']
		self.assertEqual(self._verify(otp).status_code, 200)

		response = self._verify(otp)

		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'Invalid or expired OTP')

	def test_expired_code_is_rejected(self):
		self.delivery.otp = '123456'
		self.delivery.otp_expires_at = timezone.now() - timedelta(seconds=1)
		self.delivery.save()

		response = self._verify('123456')

		self.assertEqual(response.status_code, 404)
		self.delivery.refresh_from_db()
		self.assertEqual(self.delivery.status, 'accepted')

	def test_verify_requires_assigned_rider(self):
		delivery = Delivery.objects.create(
			order_id=9003,
			otp='654321',
			otp_expires_at=timezone.now() + timedelta(minutes=5)
		)

		self.assertEqual(self._verify('654321').status_code, 400)
		delivery.refresh_from_db()
		self.assertEqual(delivery.status, 'pending')

	def test_verify_requires_otp(self):
		request = self.factory.put('/api/deliveries/otp/', {}, format='json')
		force_authenticate(request, user=self.operator)

		self.assertEqual(delivery_otp(request).status_code, 400)

	def test_otp_endpoint_requires_authentication(self):
		request = self.factory.post('/api/deliveries/otp/', {'delivery_id': self.delivery.id}, format='json')

		self.assertEqual(delivery_otp(request).status_code, 401)


class PurgeExpiredMappingsTests(TestCase):
	def setUp(self):
		self.delivery = Delivery.objects.create(order_id=8001)
		now = timezone.now()
		RiderDeliveryMapping.objects.create(
			phone='+971501111111',
			delivery=self.delivery,
			expires_at=now - timedelta(minutes=1)
		)
		RiderDeliveryMapping.objects.create(
			phone='+971502222222',
			delivery=self.delivery,
			expires_at=now + timedelta(minutes=5)
		)

	def test_dry_run_keeps_mappings(self):
		out = StringIO()
		call_command('purge_expired_mappings', dry_run=True, stdout=out)

		self.assertIn('Would delete 1', out.getvalue())
		self.assertEqual(RiderDeliveryMapping.objects.count(), 2)

	def test_command_deletes_expired(self):
		out = StringIO()
		call_command('purge_expired_mappings', stdout=out)

		self.assertIn('Deleted 1', out.getvalue())
		self.assertEqual(RiderDeliveryMapping.objects.count(), 1)

	def test_task_deletes_expired(self):
		self.assertEqual(purge_expired_mappings_task(), 1)
		self.assertFalse(RiderDeliveryMapping.objects.filter(phone='+971501111111').exists())
