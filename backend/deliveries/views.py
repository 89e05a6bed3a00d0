import logging

from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from .models import Delivery
from .permissions import HasWebhookToken
from .serializers import (
    DeliverySerializer,
    DeliveryCreateSerializer,
    DeliveryStatusSerializer,
    OfferReviewSerializer,
    OtpRequestSerializer,
    OtpVerifySerializer,
    RiderResponseSerializer,
)

# Import from services layer
from services.dispatch import DispatchAlreadyActiveError, get_dispatcher
from services.delivery_management import (
    create_delivery,
    update_delivery_status,
    redispatch_delivery,
    review_offer,
    accept_offer,
    decline_offer,
    generate_delivery_otp,
    verify_delivery_otp,
    AreaNotFoundError,
    DeliveryAlreadyAssignedError,
    DeliveryExistsError,
    DeliveryNotDispatchableError,
    DeliveryNotFoundError,
    InvalidOtpError,
    InvalidStatusError,
    NoActiveOfferError,
    RiderNotFoundError,
)

logger = logging.getLogger(__name__)


def _error(message, status_code):
    return Response({'error': message}, status=status_code)


# ==================== Operator APIs ====================

@api_view(['GET', 'POST'])
def deliveries(request):
    """
    GET: list deliveries (optionally ?status=)
    POST: create a delivery for an order and start notifying riders
    """
    if request.method == 'GET':
        queryset = Delivery.objects.select_related('rider', 'area')
        status_filter = request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return Response(DeliverySerializer(queryset, many=True).data)

    serializer = DeliveryCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = dict(serializer.validated_data)
    try:
        result = create_delivery(
            get_dispatcher(),
            order_id=data.pop('order_id'),
            area_id=data.pop('area_id', None),
            service_kind=data.pop('service_kind', 'delivery'),
            **data,
        )
    except DeliveryExistsError as e:
        return _error(str(e), status.HTTP_400_BAD_REQUEST)
    except AreaNotFoundError as e:
        return _error(str(e), status.HTTP_404_NOT_FOUND)

    return Response({
        'success': True,
        'message': result.message,
        'deliveryId': result.delivery.id,
        'delivery': DeliverySerializer(result.delivery).data,
        'riders': result.extra['riders'],
    }, status=status.HTTP_201_CREATED)


@api_view(['PUT'])
def delivery_status(request):
    """Operator status update; leaving 'pending' stops the rider dispatch"""
    serializer = DeliveryStatusSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'success': False, 'errors': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        result = update_delivery_status(
            get_dispatcher(),
            serializer.validated_data['delivery_id'],
            serializer.validated_data['status'],
        )
    except DeliveryNotFoundError as e:
        return Response({'success': False, 'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except InvalidStatusError as e:
        return Response({'success': False, 'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response({
        'success': True,
        'message': result.message,
        'data': DeliverySerializer(result.delivery).data,
        'dispatchCancelled': result.extra['dispatch_cancelled'],
    })


@api_view(['POST'])
def redispatch(request, delivery_id):
    """Offer an unassigned delivery to riders again (e.g. after a restart)"""
    try:
        result = redispatch_delivery(get_dispatcher(), delivery_id)
    except DeliveryNotFoundError as e:
        return _error(str(e), status.HTTP_404_NOT_FOUND)
    except (DeliveryNotDispatchableError, DispatchAlreadyActiveError) as e:
        return _error(str(e), status.HTTP_409_CONFLICT)

    return Response({
        'success': result.success,
        'message': result.message,
        'riderCandidates': result.extra['rider_candidates'],
    })


@api_view(['POST', 'PUT'])
def delivery_otp(request):
    """
    POST: issue a pickup handover code for a delivery
    PUT: verify a code and mark its delivery in transit
    """
    if request.method == 'POST':
        serializer = OtpRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {'success': False, 'errors': serializer.errors},
                status=status.HTTP_400_BAD_REQUEST
            )
        try:
            result = generate_delivery_otp(serializer.validated_data['delivery_id'])
        except DeliveryNotFoundError as e:
            return Response({'success': False, 'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
        except InvalidStatusError as e:
            return Response({'success': False, 'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            'success': True,
            'otp': result.extra['otp'],
            'expiresAt': result.extra['expires_at'],
        })

    serializer = OtpVerifySerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'success': False, 'errors': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )
    try:
        result = verify_delivery_otp(serializer.validated_data['otp'])
    except InvalidOtpError as e:
        return Response({'success': False, 'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except InvalidStatusError as e:
        return Response({'success': False, 'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response({
        'success': True,
        'message': result.message,
        'deliveryId': result.delivery.id,
        'delivery': DeliverySerializer(result.delivery).data,
    })


# ==================== Rider Reply Webhook ====================

@api_view(['PATCH'])
@authentication_classes([])
@permission_classes([HasWebhookToken])
def rider_response(request):
    """
    Rider's reply to a delivery offer, keyed by phone number.

    REVIEWING returns the offered delivery's details, ACCEPTED assigns it to
    the rider, DECLINED moves the offer on to the next rider.
    """
    serializer = RiderResponseSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    phone = serializer.validated_data['phone']
    reply = serializer.validated_data['status']
    dispatcher = get_dispatcher()

    try:
        if reply == 'REVIEWING':
            delivery = review_offer(dispatcher, phone)
            return Response({
                'success': True,
                'message': 'Order details retrieved for review',
                'orderDetails': OfferReviewSerializer(delivery).data,
            })

        if reply == 'ACCEPTED':
            result = accept_offer(dispatcher, phone)
            return Response({
                'success': True,
                'message': result.message,
                'deliveryId': result.delivery.id,
                'riderName': result.extra['rider_name'],
                'orderDetails': OfferReviewSerializer(result.delivery).data,
            })

        result = decline_offer(dispatcher, phone)
        return Response({'success': True, 'message': result.message})

    except RiderNotFoundError as e:
        return _error(str(e), status.HTTP_404_NOT_FOUND)
    except (NoActiveOfferError, DeliveryNotFoundError) as e:
        return _error(str(e), status.HTTP_404_NOT_FOUND)
    except DeliveryAlreadyAssignedError as e:
        return Response({'success': False, 'message': str(e)}, status=status.HTTP_409_CONFLICT)
