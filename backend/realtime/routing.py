"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.ops_consumer import DeliveryOpsConsumer

websocket_urlpatterns = [
    # Operators' dispatch feed
    # URL: ws://localhost:8000/ws/ops/deliveries/?token=<jwt>
    re_path(
        r"ws/ops/deliveries/$",
        DeliveryOpsConsumer.as_asgi(),
        name="delivery-ops-ws"
    ),
]
