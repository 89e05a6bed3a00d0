from django.core.management.base import BaseCommand
from django.utils import timezone

from deliveries.models import RiderDeliveryMapping
from services.dispatch.stores import DjangoMappingStore


class Command(BaseCommand):
    help = "Delete rider phone -> delivery mappings that have expired."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many mappings would be deleted without deleting them.",
        )

    def handle(self, *args, **options):
        now = timezone.now()

        if options["dry_run"]:
            count = RiderDeliveryMapping.objects.filter(expires_at__lte=now).count()
            self.stdout.write(
                self.style.WARNING(f"DRY RUN: Would delete {count} expired mapping(s).")
            )
            return

        deleted = DjangoMappingStore().purge_expired(now)
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} expired mapping(s)."))
