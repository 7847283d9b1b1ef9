from rest_framework import serializers

from common.serializers import EditableFieldsModelSerializer
from deliveries.models import Delivery, DeliveryItem, DeliveryTrackingPoint, is_late, items_progress, tracking_progress
from routes.serializers import LineItemInputSerializer, PlaceSerializer

DELIVERY_EDITABLE_FIELDS = frozenset({"client_phone", "client_email", "notes"})


class DeliveryItemSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = DeliveryItem
        fields = ["id", "product", "product_code", "product_name", "quantity_programmed", "quantity_delivered", "note"]
        read_only_fields = fields


class DeliveryTrackingPointSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryTrackingPoint
        fields = ["id", "sequence", "latitude", "longitude", "speed", "progress", "label", "recorded_at"]
        read_only_fields = fields


class DeliverySerializer(EditableFieldsModelSerializer):
    items = DeliveryItemSerializer(many=True, read_only=True)
    route_number = serializers.CharField(source="route.number", read_only=True, default=None)
    vehicle_plate = serializers.CharField(source="vehicle.plate", read_only=True)
    driver_username = serializers.CharField(source="driver.username", read_only=True)
    progress = serializers.SerializerMethodField()
    items_progress = serializers.SerializerMethodField()
    is_late = serializers.SerializerMethodField()

    class Meta:
        model = Delivery
        fields = [
            "id",
            "number",
            "route",
            "route_number",
            "driver",
            "driver_username",
            "vehicle",
            "vehicle_plate",
            "client_name",
            "client_address",
            "client_latitude",
            "client_longitude",
            "client_phone",
            "client_email",
            "origin_name",
            "origin_address",
            "origin_latitude",
            "origin_longitude",
            "items",
            "state",
            "scheduled_at",
            "started_at",
            "delivered_at",
            "tracking_active",
            "current_latitude",
            "current_longitude",
            "position_updated_at",
            "total_distance_km",
            "traveled_distance_km",
            "estimated_arrival_minutes",
            "progress",
            "items_progress",
            "is_late",
            "signature",
            "photo",
            "rating",
            "delay_reason",
            "cancellation_reason",
            "notes",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [field for field in fields if field not in DELIVERY_EDITABLE_FIELDS]

    def get_progress(self, obj):
        return tracking_progress(obj)

    def get_items_progress(self, obj):
        return items_progress(obj)

    def get_is_late(self, obj):
        return is_late(obj)


class ClientSerializer(PlaceSerializer):
    phone = serializers.CharField(max_length=20, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)


class DeliveryCreateSerializer(serializers.Serializer):
    driver = serializers.UUIDField()
    vehicle = serializers.UUIDField()
    route = serializers.UUIDField(required=False, allow_null=True)
    client = ClientSerializer()
    origin = PlaceSerializer()
    items = LineItemInputSerializer(many=True)
    scheduled_at = serializers.DateTimeField()
    total_distance_km = serializers.FloatField(required=False, allow_null=True, min_value=0)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class DeliveredItemSerializer(serializers.Serializer):
    product = serializers.UUIDField()
    quantity_delivered = serializers.IntegerField(min_value=0)


class CompleteDeliverySerializer(serializers.Serializer):
    signature = serializers.CharField(required=False, allow_blank=True)
    photo = serializers.CharField(required=False, allow_blank=True)
    rating = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=5)
    items = DeliveredItemSerializer(many=True, required=False)
