from django.db import models
from django.utils import timezone


class ServiceArea(models.Model):
    """An area riders are registered to serve (an emirate)."""

    name = models.CharField(max_length=100, unique=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'service_areas'
        ordering = ['name']

    def __str__(self):
        return self.name


class Rider(models.Model):
    """A delivery rider or ride-service driver reachable on WhatsApp"""

    TYPE_CHOICES = [
        ('delivery', 'Delivery'),
        ('ride_service', 'Ride Service'),
    ]

    name = models.CharField(max_length=100)
    phone = models.CharField(max_length=20, unique=True)  # normalized +<digits>
    rider_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default='delivery')
    available = models.BooleanField(default=True)
    areas = models.ManyToManyField(ServiceArea, related_name='riders', blank=True)

    # Last known position, used to rank candidates for a pickup
    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    last_location_update = models.DateTimeField(default=timezone.now)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'riders'
        ordering = ['id']

    def save(self, *args, **kwargs):
        from common.utils.phone import normalize_phone
        self.phone = normalize_phone(self.phone)
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.phone})"
