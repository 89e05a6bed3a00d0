from rest_framework import serializers

from .models import Delivery
from riders.serializers import RiderBasicSerializer, ServiceAreaSerializer


class DeliverySerializer(serializers.ModelSerializer):
    """Serializer for deliveries"""
    rider = RiderBasicSerializer(read_only=True)
    area = ServiceAreaSerializer(read_only=True)

    class Meta:
        model = Delivery
        fields = ['id', 'order_id', 'area', 'service_kind', 'status', 'rider',
                  'customer_name', 'customer_phone', 'pickup_address',
                  'pickup_latitude', 'pickup_longitude', 'dropoff_address',
                  'dropoff_location', 'note', 'created_at', 'updated_at',
                  'accepted_at', 'delivered_at']
        read_only_fields = fields


class DeliveryCreateSerializer(serializers.ModelSerializer):
    """Serializer for creating deliveries"""
    area_id = serializers.IntegerField(required=False, allow_null=True)

    class Meta:
        model = Delivery
        fields = ['order_id', 'area_id', 'service_kind', 'customer_name',
                  'customer_phone', 'pickup_address', 'pickup_latitude',
                  'pickup_longitude', 'dropoff_address', 'dropoff_location', 'note']
        # Duplicate orders are reported by the service layer with a clearer message
        extra_kwargs = {'order_id': {'validators': []}}


class RiderResponseSerializer(serializers.Serializer):
    """A rider's reply to an offer, relayed by the WhatsApp flow"""
    phone = serializers.CharField()
    status = serializers.ChoiceField(choices=['REVIEWING', 'ACCEPTED', 'DECLINED'])


class DeliveryStatusSerializer(serializers.Serializer):
    """Serializer for operator status updates"""
    delivery_id = serializers.IntegerField()
    status = serializers.ChoiceField(choices=[choice for choice, _ in Delivery.STATUS_CHOICES])


class OtpRequestSerializer(serializers.Serializer):
    """Ask for a new pickup handover code"""
    delivery_id = serializers.IntegerField()


class OtpVerifySerializer(serializers.Serializer):
    """Handover code read back by the outlet"""
    otp = serializers.CharField(max_length=6)


class OfferReviewSerializer(serializers.ModelSerializer):
    """What a rider sees before accepting: pickup, dropoff and order basics"""
    area_name = serializers.CharField(source='area.name', read_only=True, default=None)
    dropoff_coordinates = serializers.SerializerMethodField()

    class Meta:
        model = Delivery
        fields = ['id', 'order_id', 'service_kind', 'area_name', 'customer_name',
                  'customer_phone', 'pickup_address', 'pickup_latitude',
                  'pickup_longitude', 'dropoff_address', 'dropoff_location',
                  'dropoff_coordinates', 'note']

    def get_dropoff_coordinates(self, obj):
        coords = obj.dropoff
        if coords is None:
            return None
        return {"lat": coords[0], "lng": coords[1]}
