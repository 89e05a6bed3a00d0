"""Deliveries app configuration."""

from django.apps import AppConfig


class DeliveriesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'deliveries'

    # Process-wide dispatcher; its offer registry lives as long as this process
    dispatcher = None

    def ready(self):
        from services.dispatch import build_dispatcher
        self.dispatcher = build_dispatcher()
