from django.db import models

from common.utils.geo import parse_location


class Delivery(models.Model):
    """A delivery job for one order, offered to riders until one accepts"""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('in_transit', 'In Transit'),
        ('delivered', 'Delivered'),
        ('cancelled', 'Cancelled'),
        ('no_riders', 'No Riders Available'),
    ]

    SERVICE_KIND_CHOICES = [
        ('delivery', 'Delivery'),
        ('ride_service', 'Ride Service'),
    ]

    order_id = models.PositiveIntegerField(unique=True)
    area = models.ForeignKey(
        'riders.ServiceArea',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='deliveries'
    )
    service_kind = models.CharField(max_length=20, choices=SERVICE_KIND_CHOICES, default='delivery')

    # Customer
    customer_name = models.CharField(max_length=100, blank=True)
    customer_phone = models.CharField(max_length=20, blank=True)

    # Pickup (outlet) and dropoff (customer)
    pickup_address = models.TextField(null=True, blank=True)
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_address = models.TextField(null=True, blank=True)
    dropoff_location = models.CharField(max_length=64, null=True, blank=True)  # "lat,lng"
    note = models.TextField(null=True, blank=True)

    # Handover code the rider shows at pickup
    otp = models.CharField(max_length=6, null=True, blank=True, db_index=True)
    otp_expires_at = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    rider = models.ForeignKey(
        'riders.Rider',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='deliveries'
    )

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'deliveries'
        ordering = ['-created_at']

    @property
    def is_unassigned(self):
        return self.status == 'pending' and self.rider_id is None

    @property
    def pickup(self):
        if self.pickup_latitude is None or self.pickup_longitude is None:
            return None
        return float(self.pickup_latitude), float(self.pickup_longitude)

    @property
    def dropoff(self):
        return parse_location(self.dropoff_location)

    def __str__(self):
        return f"Delivery #{self.id} - Order {self.order_id} - {self.status}"


class RiderDeliveryMapping(models.Model):
    """Which delivery a rider's phone was last offered, until it expires."""

    phone = models.CharField(max_length=20, unique=True)
    delivery = models.ForeignKey(
        Delivery,
        on_delete=models.CASCADE,
        related_name='phone_mappings'
    )
    expires_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'rider_delivery_mappings'

    def __str__(self):
        return f"{self.phone} -> Delivery {self.delivery_id} (until {self.expires_at:%H:%M:%S})"
