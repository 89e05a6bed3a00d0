from rest_framework import serializers

from riders.models import Rider, ServiceArea


class ServiceAreaSerializer(serializers.ModelSerializer):
    class Meta:
        model = ServiceArea
        fields = ["id", "name"]


class RiderSerializer(serializers.ModelSerializer):
    """
    Rider listing used by operators and by delivery creation to pick candidates
    """
    areas = ServiceAreaSerializer(many=True, read_only=True)

    class Meta:
        model = Rider
        fields = [
            "id",
            "name",
            "phone",
            "rider_type",
            "available",
            "areas",
            "current_latitude",
            "current_longitude",
            "last_location_update",
        ]
        read_only_fields = ["id", "last_location_update"]


class RiderBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of rider info for delivery details.
    """

    class Meta:
        model = Rider
        fields = ["id", "name", "phone"]
