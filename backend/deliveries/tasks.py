"""Celery tasks for delivery background processing."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def purge_expired_mappings_task():
    """
    Delete phone -> delivery mappings whose window has passed.

    Scheduled by Celery beat. Expired mappings are already ignored when
    resolving replies; this only keeps the table small.
    """
    from services.dispatch.stores import DjangoMappingStore

    deleted = DjangoMappingStore().purge_expired()
    if deleted:
        logger.info("Purged %d expired rider delivery mapping(s)", deleted)
    return deleted
