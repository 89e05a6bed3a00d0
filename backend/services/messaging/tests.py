from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase, override_settings

from services.dispatch.exceptions import TransportError
from .uchat import SEND_SUB_FLOW_PATH, UChatTransport


def _response(status_code=200, reason="OK"):
	response = MagicMock()
	response.status_code = status_code
	response.reason = reason
	response.ok = status_code < 400
	return response


class UChatTransportTests(SimpleTestCase):
	def setUp(self):
		self.session = MagicMock()
		self.transport = UChatTransport(
			api_key="test-key",
			sub_flow_ns="f123",
			base_url="https://uchat.test/api/",
			session=self.session,
		)
		self.context = {"order_id": 7001, "delivery_id": 12, "rider_name": "Ali"}

	def test_send_posts_sub_flow_for_rider(self):
		self.session.post.return_value = _response()

		self.transport.send("971501111111", self.context, timeout=10.0)

		self.session.post.assert_called_once_with(
			"https://uchat.test/api" + SEND_SUB_FLOW_PATH,
			json={
				"user_id": "971501111111",
				"sub_flow_ns": "f123",
				"orderId": "7001",
				"deliveryId": "12",
				"driverName": "Ali",
			},
			headers={"Authorization": "Bearer test-key"},
			timeout=10.0,
		)

	def test_error_status_raises_transport_error(self):
		self.session.post.return_value = _response(500, "Internal Server Error")

		with self.assertRaisesMessage(TransportError, "HTTP 500: Internal Server Error"):
			self.transport.send("971501111111", self.context)

	def test_timeout_raises_transport_error(self):
		self.session.post.side_effect = requests.Timeout("read timed out")

		with self.assertRaises(TransportError) as ctx:
			self.transport.send("971501111111", self.context, timeout=10.0)

		self.assertIsInstance(ctx.exception.__cause__, requests.Timeout)

	def test_recipient_is_phone_without_plus(self):
		self.assertEqual(self.transport.format_recipient("+971 50 111 1111"), "971501111111")
		self.assertEqual(self.transport.format_recipient("0501111111"), "971501111111")

	@override_settings(UCHAT_API_KEY="", UCHAT_SUB_FLOW_NS="f999", UCHAT_BASE_URL="https://uchat.test/api")
	def test_from_settings_warns_without_api_key(self):
		with self.assertLogs("services.messaging.uchat", level="WARNING"):
			transport = UChatTransport.from_settings()

		self.assertEqual(transport.sub_flow_ns, "f999")
		self.assertEqual(transport.base_url, "https://uchat.test/api")
