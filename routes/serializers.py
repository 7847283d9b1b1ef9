from rest_framework import serializers

from common.serializers import EditableFieldsModelSerializer
from routes.models import Route, RouteItem, RouteTrackingPoint, actual_duration_hours, delivery_progress, is_late

ROUTE_EDITABLE_FIELDS = frozenset(
    {
        "destination_contact_name",
        "destination_contact_phone",
        "destination_contact_email",
        "priority",
        "distance_km",
        "estimated_hours",
        "notes",
    }
)


class RouteItemSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = RouteItem
        fields = ["id", "product", "product_code", "product_name", "quantity_planned", "quantity_delivered"]
        read_only_fields = fields


class RouteTrackingPointSerializer(serializers.ModelSerializer):
    class Meta:
        model = RouteTrackingPoint
        fields = ["id", "sequence", "latitude", "longitude", "speed", "note", "recorded_at"]
        read_only_fields = fields


class RouteSerializer(EditableFieldsModelSerializer):
    items = RouteItemSerializer(many=True, read_only=True)
    vehicle_plate = serializers.CharField(source="vehicle.plate", read_only=True)
    driver_username = serializers.CharField(source="driver.username", read_only=True)
    delivery_progress = serializers.SerializerMethodField()
    is_late = serializers.SerializerMethodField()
    actual_duration_hours = serializers.SerializerMethodField()

    class Meta:
        model = Route
        fields = [
            "id",
            "number",
            "origin_name",
            "origin_address",
            "origin_latitude",
            "origin_longitude",
            "destination_name",
            "destination_address",
            "destination_latitude",
            "destination_longitude",
            "destination_contact_name",
            "destination_contact_phone",
            "destination_contact_email",
            "scheduled_at",
            "vehicle",
            "vehicle_plate",
            "driver",
            "driver_username",
            "items",
            "state",
            "priority",
            "started_at",
            "finished_at",
            "cancellation_reason",
            "distance_km",
            "estimated_hours",
            "notes",
            "delivery_progress",
            "is_late",
            "actual_duration_hours",
            "created_by",
            "created_at",
            "updated_at",
        ]
        # Everything else changes through the lifecycle operations.
        read_only_fields = [field for field in fields if field not in ROUTE_EDITABLE_FIELDS]

    def get_delivery_progress(self, obj):
        return delivery_progress(obj)

    def get_is_late(self, obj):
        return is_late(obj)

    def get_actual_duration_hours(self, obj):
        return actual_duration_hours(obj)


class PlaceSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=150)
    address = serializers.CharField(max_length=255)
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()


class DestinationSerializer(PlaceSerializer):
    contact_name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    contact_phone = serializers.CharField(max_length=20, required=False, allow_blank=True)
    contact_email = serializers.EmailField(required=False, allow_blank=True)


class LineItemInputSerializer(serializers.Serializer):
    product = serializers.UUIDField()
    quantity = serializers.IntegerField()
    note = serializers.CharField(max_length=255, required=False, allow_blank=True)


class RouteCreateSerializer(serializers.Serializer):
    origin = PlaceSerializer()
    destination = DestinationSerializer()
    scheduled_at = serializers.DateTimeField()
    vehicle = serializers.UUIDField()
    driver = serializers.UUIDField()
    items = LineItemInputSerializer(many=True)
    priority = serializers.ChoiceField(choices=Route.Priority.choices, default=Route.Priority.MEDIA)
    distance_km = serializers.DecimalField(max_digits=10, decimal_places=2, required=False, allow_null=True)
    estimated_hours = serializers.DecimalField(max_digits=6, decimal_places=2, required=False, allow_null=True)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default="")


class RouteTransitionSerializer(serializers.Serializer):
    state = serializers.CharField()
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class TrackingInputSerializer(serializers.Serializer):
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()
    speed = serializers.FloatField(required=False, default=0)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class DeliveredQuantitySerializer(serializers.Serializer):
    product = serializers.UUIDField()
    quantity_delivered = serializers.IntegerField()


class DeliveredQuantitiesSerializer(serializers.Serializer):
    deliveries = DeliveredQuantitySerializer(many=True)
