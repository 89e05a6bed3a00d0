"""Builds the process-wide dispatcher from Django settings."""

from django.apps import apps
from django.conf import settings

from .retry import RetryPolicy
from .scheduling import TimerScheduler
from .sequencer import DispatchSequencer


def build_dispatcher() -> DispatchSequencer:
    from realtime.broadcast import notify_operators_event
    from services.messaging import UChatTransport
    from .stores import DjangoDeliveryStore, DjangoMappingStore

    return DispatchSequencer(
        transport=UChatTransport.from_settings(),
        mapping_store=DjangoMappingStore(),
        delivery_store=DjangoDeliveryStore(),
        scheduler=TimerScheduler(),
        retry_policy=RetryPolicy(
            attempts=getattr(settings, "DELIVERY_SEND_ATTEMPTS", 3),
            base_delay=getattr(settings, "DELIVERY_SEND_BACKOFF_SECONDS", 1.0),
            timeout=getattr(settings, "DELIVERY_SEND_TIMEOUT_SECONDS", 10.0),
        ),
        offer_timeout=getattr(settings, "DELIVERY_OFFER_TIMEOUT_SECONDS", 60),
        mapping_ttl=getattr(settings, "DELIVERY_MAPPING_TTL_SECONDS", 300),
        failure_delay=getattr(settings, "DELIVERY_FAILURE_ADVANCE_SECONDS", 1),
        notifier=notify_operators_event,
    )


def get_dispatcher() -> DispatchSequencer:
    """The dispatcher owned by the ``deliveries`` app config."""
    return apps.get_app_config("deliveries").dispatcher
