from rest_framework import serializers

from common.serializers import EditableFieldsModelSerializer
from fleet.models import Vehicle, requires_maintenance


class VehicleSerializer(EditableFieldsModelSerializer):
    assigned_driver_username = serializers.CharField(source="assigned_driver.username", read_only=True)
    requires_maintenance = serializers.SerializerMethodField()

    class Meta:
        model = Vehicle
        fields = [
            "id",
            "plate",
            "brand",
            "model",
            "year",
            "kind",
            "load_capacity",
            "capacity_unit",
            "state",
            "assigned_driver",
            "assigned_driver_username",
            "mileage",
            "last_maintenance",
            "next_maintenance",
            "requires_maintenance",
            "notes",
            "is_active",
            "created_at",
            "updated_at",
        ]
        # State and driver change only through the dedicated actions.
        read_only_fields = ["id", "state", "assigned_driver", "created_at", "updated_at"]

    def validate_plate(self, value):
        return value.strip().upper()

    def validate(self, attrs):
        last_maintenance = attrs.get("last_maintenance", getattr(self.instance, "last_maintenance", None))
        next_maintenance = attrs.get("next_maintenance", getattr(self.instance, "next_maintenance", None))
        if last_maintenance and next_maintenance and next_maintenance < last_maintenance:
            raise serializers.ValidationError({"next_maintenance": "Must be on or after the last maintenance date."})
        return attrs

    def get_requires_maintenance(self, obj):
        return requires_maintenance(obj)


class AssignDriverSerializer(serializers.Serializer):
    driver = serializers.UUIDField()


class ChangeStateSerializer(serializers.Serializer):
    state = serializers.CharField()
