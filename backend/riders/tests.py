from django.contrib.auth.models import User
from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from .models import Rider, ServiceArea
from .services import find_rider_by_phone, list_candidates
from .views import list_riders


class CandidateRankingTests(TestCase):
	def setUp(self):
		self.dubai = ServiceArea.objects.create(name='Dubai')
		self.sharjah = ServiceArea.objects.create(name='Sharjah')
		self.pickup = (25.204800, 55.270800)

		self.far = Rider.objects.create(
			name='Far',
			phone='0501000001',
			current_latitude=25.300000,
			current_longitude=55.400000
		)
		self.near = Rider.objects.create(
			name='Near',
			phone='0501000002',
			current_latitude=25.205000,
			current_longitude=55.271000
		)
		self.unlocated = Rider.objects.create(name='Unlocated', phone='0501000003')
		self.busy = Rider.objects.create(name='Busy', phone='0501000004', available=False)
		self.driver = Rider.objects.create(name='Driver', phone='0501000005', rider_type='ride_service')
		self.elsewhere = Rider.objects.create(name='Elsewhere', phone='0501000006')

		for rider in (self.far, self.near, self.unlocated, self.busy, self.driver):
			rider.areas.add(self.dubai)
		self.elsewhere.areas.add(self.sharjah)

	def test_closest_riders_first_then_unlocated(self):
		candidates = list_candidates(self.dubai.id, 'delivery', pickup=self.pickup)

		self.assertEqual(
			[c.rider_id for c in candidates],
			[self.near.id, self.far.id, self.unlocated.id]
		)
		self.assertEqual(candidates[0].phone, '+971501000002')
		self.assertEqual(candidates[0].name, 'Near')

	def test_roster_order_without_pickup(self):
		candidates = list_candidates(self.dubai.id, 'delivery')

		self.assertEqual(
			[c.rider_id for c in candidates],
			[self.far.id, self.near.id, self.unlocated.id]
		)

	def test_service_kind_selects_rider_type(self):
		candidates = list_candidates(self.dubai.id, 'ride_service')

		self.assertEqual([c.rider_id for c in candidates], [self.driver.id])

	def test_empty_area_has_no_candidates(self):
		area = ServiceArea.objects.create(name='Fujairah')

		self.assertEqual(list_candidates(area.id), [])

	def test_phone_is_normalized_on_save_and_lookup(self):
		self.assertEqual(self.near.phone, '+971501000002')
		self.assertEqual(find_rider_by_phone('971501000002'), self.near)
		self.assertEqual(find_rider_by_phone('00971 50 100 0002'), self.near)
		self.assertIsNone(find_rider_by_phone('971509999999'))


class RiderListApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.operator = User.objects.create_user(username='ops', password='ops12345', is_staff=True)
		self.area = ServiceArea.objects.create(name='Dubai')
		self.available = Rider.objects.create(name='Ali', phone='0501111111')
		self.unavailable = Rider.objects.create(name='Sara', phone='0502222222', available=False)
		self.available.areas.add(self.area)

	def _get(self, params=None):
		request = self.factory.get('/api/riders/', params or {})
		force_authenticate(request, user=self.operator)
		return list_riders(request)

	def test_lists_all_riders(self):
		response = self._get()

		self.assertEqual(response.status_code, 200)
		self.assertEqual([r['id'] for r in response.data], [self.available.id, self.unavailable.id])

	def test_filters_by_availability_and_area(self):
		response = self._get({'available': 'true', 'area_id': str(self.area.id)})

		self.assertEqual([r['id'] for r in response.data], [self.available.id])
		self.assertEqual(response.data[0]['areas'], [{'id': self.area.id, 'name': 'Dubai'}])

	def test_rejects_non_numeric_area(self):
		response = self._get({'area_id': 'dubai'})

		self.assertEqual(response.status_code, 400)
