from unittest.mock import patch

from django.test import TestCase
from rest_framework.test import APIRequestFactory

from .views import health_check


class HealthCheckTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	@patch('dispatch_backend.views.redis.Redis.from_url')
	def test_healthy_when_services_respond(self, mock_redis):
		response = health_check(self.factory.get('/health/'))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'healthy')
		self.assertEqual(response.data['services']['dispatcher']['active_offers'], 0)
		mock_redis.return_value.ping.assert_called_once()

	@patch('dispatch_backend.views.redis.Redis.from_url')
	def test_unhealthy_when_redis_is_down(self, mock_redis):
		mock_redis.return_value.ping.side_effect = ConnectionError("refused")

		response = health_check(self.factory.get('/health/'))

		self.assertEqual(response.status_code, 503)
		self.assertTrue(response.data['services']['redis'].startswith('unhealthy'))
