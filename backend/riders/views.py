from rest_framework.decorators import api_view
from rest_framework.response import Response

from riders.serializers import RiderSerializer
from riders import services


def _parse_bool(value):
    if value is None:
        return None
    return value.lower() == "true"


@api_view(["GET"])
def list_riders(request):
    """
    List riders, optionally filtered.

    Query params:
        available: "true" / "false"
        rider_type: delivery | ride_service
        area_id: service area id
    """
    area_id = request.query_params.get("area_id")
    if area_id is not None and not area_id.isdigit():
        return Response({"error": "area_id must be an integer"}, status=400)

    riders = services.filter_riders(
        available=_parse_bool(request.query_params.get("available")),
        rider_type=request.query_params.get("rider_type"),
        area_id=int(area_id) if area_id else None,
    )
    return Response(RiderSerializer(riders, many=True).data)
