from unittest.mock import AsyncMock, MagicMock, patch

from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser, User
from django.test import SimpleTestCase

from .broadcast import OPERATORS_GROUP, notify_operators_event
from .consumers.ops_consumer import DeliveryOpsConsumer
from .middleware import QueryStringJWTMiddleware


class DeliveryOpsConsumerTests(SimpleTestCase):
	async def _connect(self, user):
		communicator = WebsocketCommunicator(DeliveryOpsConsumer.as_asgi(), "/ws/ops/deliveries/")
		communicator.scope["user"] = user
		connected, _ = await communicator.connect()
		return communicator, connected

	async def test_staff_receives_dispatch_events(self):
		communicator, connected = await self._connect(User(id=1, username="ops", is_staff=True))
		self.assertTrue(connected)
		welcome = await communicator.receive_json_from()
		self.assertEqual(welcome["type"], "connection_established")

		await get_channel_layer().group_send(OPERATORS_GROUP, {
			"type": "delivery_assigned",
			"delivery_id": 7,
			"rider_id": 3,
			"timestamp": "2025-07-15T12:00:00+00:00",
		})
		event = await communicator.receive_json_from()

		self.assertEqual(event["type"], "delivery_assigned")
		self.assertEqual(event["delivery_id"], 7)
		self.assertEqual(event["rider_id"], 3)
		await communicator.disconnect()

	async def test_exhausted_event_has_default_message(self):
		communicator, _ = await self._connect(User(id=1, username="ops", is_staff=True))
		await communicator.receive_json_from()

		await get_channel_layer().group_send(OPERATORS_GROUP, {"type": "delivery_exhausted", "delivery_id": 8})
		event = await communicator.receive_json_from()

		self.assertEqual(event["message"], "No riders accepted")
		await communicator.disconnect()

	async def test_ping_and_unknown_messages(self):
		communicator, _ = await self._connect(User(id=1, username="ops", is_staff=True))
		await communicator.receive_json_from()

		await communicator.send_json_to({"type": "ping"})
		self.assertEqual(await communicator.receive_json_from(), {"type": "pong"})

		await communicator.send_json_to({"type": "subscribe"})
		error = await communicator.receive_json_from()
		self.assertEqual(error["type"], "error")

		await communicator.send_json_to({})
		error = await communicator.receive_json_from()
		self.assertEqual(error["message"], "Message type is required")
		await communicator.disconnect()

	async def test_non_staff_and_anonymous_are_refused(self):
		communicator, connected = await self._connect(User(id=2, username="rider", is_staff=False))
		self.assertFalse(connected)

		communicator, connected = await self._connect(AnonymousUser())
		self.assertFalse(connected)


class NotifyOperatorsTests(SimpleTestCase):
	def test_sends_event_to_operators_group(self):
		layer = MagicMock()
		layer.group_send = AsyncMock()

		with patch("realtime.broadcast.get_channel_layer", return_value=layer):
			sent = notify_operators_event("delivery_cancelled", 5, "Delivery cancelled", extra={"by": "ops"})

		self.assertTrue(sent)
		group, payload = layer.group_send.call_args.args
		self.assertEqual(group, OPERATORS_GROUP)
		self.assertEqual(payload["type"], "delivery_cancelled")
		self.assertEqual(payload["delivery_id"], 5)
		self.assertEqual(payload["message"], "Delivery cancelled")
		self.assertEqual(payload["by"], "ops")
		self.assertIn("timestamp", payload)

	def test_failures_are_logged_not_raised(self):
		layer = MagicMock()
		layer.group_send = AsyncMock(side_effect=RuntimeError("redis down"))

		with patch("realtime.broadcast.get_channel_layer", return_value=layer):
			with self.assertLogs("realtime.broadcast", level="ERROR"):
				sent = notify_operators_event("delivery_exhausted", 5)

		self.assertFalse(sent)

	def test_no_channel_layer(self):
		with patch("realtime.broadcast.get_channel_layer", return_value=None):
			self.assertFalse(notify_operators_event("delivery_assigned", 5))


class QueryStringJWTMiddlewareTests(SimpleTestCase):
	async def _scope_user(self, query_string, user=None):
		seen = {}

		async def inner(scope, receive, send):
			seen["user"] = scope["user"]

		middleware = QueryStringJWTMiddleware(inner)
		await middleware({"type": "websocket", "query_string": query_string, "user": user}, None, None)
		return seen["user"]

	async def test_invalid_token_is_anonymous(self):
		user = await self._scope_user(b"token=not-a-jwt", user=User(id=1, username="ops", is_staff=True))

		self.assertTrue(user.is_anonymous)

	async def test_session_user_kept_without_token(self):
		staff = User(id=1, username="ops", is_staff=True)

		user = await self._scope_user(b"", user=staff)

		self.assertIs(user, staff)
