"""Tells what to show in the Django admin interface for deliveries app"""

from django.contrib import admin
from .models import Delivery, RiderDeliveryMapping

@admin.register(Delivery)
class DeliveryAdmin(admin.ModelAdmin):
    """Delivery admin"""
    list_display = ['id', 'order_id', 'area', 'rider', 'status', 'created_at', 'accepted_at', 'delivered_at']
    list_filter = ['status', 'service_kind', 'area', 'created_at']
    search_fields = ['order_id', 'customer_name', 'rider__name', 'rider__phone', 'pickup_address']
    readonly_fields = ['created_at', 'updated_at', 'accepted_at', 'delivered_at', 'otp_expires_at']
    date_hierarchy = 'created_at'


@admin.register(RiderDeliveryMapping)
class RiderDeliveryMappingAdmin(admin.ModelAdmin):
    list_display = ("phone", "delivery", "expires_at", "created_at")
    search_fields = ("phone", "delivery__id")
