from django.contrib import admin
from riders.models import Rider, ServiceArea


@admin.register(Rider)
class RiderAdmin(admin.ModelAdmin):
    """Admin panel for managing riders"""

    list_display = [
        "name",
        "phone",
        "rider_type",
        "available",
        "last_location_update",
    ]

    list_filter = [
        "rider_type",
        "available",
        "areas",
    ]

    search_fields = [
        "name",
        "phone",
    ]

    readonly_fields = [
        "last_location_update",
    ]

    filter_horizontal = ["areas"]
    ordering = ("name",)


@admin.register(ServiceArea)
class ServiceAreaAdmin(admin.ModelAdmin):
    list_display = ("name", "is_active")
