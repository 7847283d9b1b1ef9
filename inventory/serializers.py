from rest_framework import serializers

from common.serializers import EditableFieldsModelSerializer
from inventory.models import Movement, Product, Warehouse, inventory_value, is_low_stock, movement_delta


class WarehouseSerializer(EditableFieldsModelSerializer):
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Warehouse
        fields = [
            "id",
            "name",
            "address",
            "city",
            "state",
            "capacity",
            "manager",
            "is_active",
            "product_count",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "product_count", "created_at", "updated_at"]

    def get_product_count(self, obj):
        return obj.products.filter(is_active=True).count()


class ProductSerializer(EditableFieldsModelSerializer):
    warehouse_name = serializers.CharField(source="warehouse.name", read_only=True)
    is_low_stock = serializers.SerializerMethodField()
    inventory_value = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = [
            "id",
            "code",
            "name",
            "description",
            "category",
            "stock",
            "stock_minimum",
            "price",
            "warehouse",
            "warehouse_name",
            "is_active",
            "is_low_stock",
            "inventory_value",
            "version",
            "created_at",
            "updated_at",
        ]
        # Stock changes only through recorded movements.
        read_only_fields = ["id", "stock", "version", "created_at", "updated_at"]

    def validate_code(self, value):
        return value.strip().upper()

    def validate_warehouse(self, value):
        if not value.is_active:
            raise serializers.ValidationError("The selected warehouse is inactive.")
        return value

    def get_is_low_stock(self, obj):
        return is_low_stock(obj)

    def get_inventory_value(self, obj):
        return str(inventory_value(obj))


class MovementSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    responsible_username = serializers.CharField(source="responsible.username", read_only=True)
    delta = serializers.SerializerMethodField()

    class Meta:
        model = Movement
        fields = [
            "id",
            "type",
            "product",
            "product_code",
            "product_name",
            "quantity",
            "responsible",
            "responsible_username",
            "motive",
            "origin_warehouse",
            "destination_warehouse",
            "stock_before",
            "stock_after",
            "delta",
            "sequence",
            "notes",
            "reference_document",
            "occurred_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_delta(self, obj):
        return movement_delta(obj)


class MovementCreateSerializer(serializers.Serializer):
    type = serializers.CharField()
    product = serializers.UUIDField()
    quantity = serializers.IntegerField()
    motive = serializers.CharField()
    origin_warehouse = serializers.UUIDField(required=False, allow_null=True)
    destination_warehouse = serializers.UUIDField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    reference_document = serializers.CharField(required=False, allow_blank=True, default="")


class PeriodQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
