from django.db.models import F, Q
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.exceptions import ConflictError
from common.permissions import RoleCapabilityPermission
from inventory.models import Movement, Product, Warehouse
from inventory.serializers import (
    MovementCreateSerializer,
    MovementSerializer,
    PeriodQuerySerializer,
    ProductSerializer,
    WarehouseSerializer,
)
from inventory.services import (
    ensure_product_deletable,
    obtain_history,
    recent_movements,
    record_movement,
    summarize_by_type,
)

CATALOG_PERMISSIONS = {
    "list": "inventory.view",
    "retrieve": "inventory.view",
    "create": "inventory.manage",
    "update": "inventory.manage",
    "partial_update": "inventory.manage",
    "destroy": "inventory.manage",
}


class WarehouseViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Warehouse.objects.all()
    serializer_class = WarehouseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = CATALOG_PERMISSIONS
    audit_entity = "warehouse"

    def get_queryset(self):
        queryset = super().get_queryset()
        is_active = self.request.query_params.get("is_active")
        city = self.request.query_params.get("city")
        if is_active in {"true", "false"}:
            queryset = queryset.filter(is_active=is_active == "true")
        if city:
            queryset = queryset.filter(city__iexact=city)
        return queryset

    def perform_destroy(self, instance):
        if instance.products.exists():
            raise ConflictError(
                "Warehouses holding products cannot be deleted.",
                details={"warehouse_id": str(instance.pk)},
            )
        super().perform_destroy(instance)


class ProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.select_related("warehouse")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {**CATALOG_PERMISSIONS, "history": "inventory.view", "low_stock": "inventory.view"}
    audit_entity = "product"

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("category"):
            queryset = queryset.filter(category=params["category"])
        if params.get("warehouse"):
            queryset = queryset.filter(warehouse_id=params["warehouse"])
        if params.get("is_active") in {"true", "false"}:
            queryset = queryset.filter(is_active=params["is_active"] == "true")
        if params.get("search"):
            queryset = queryset.filter(Q(name__icontains=params["search"]) | Q(code__icontains=params["search"]))
        return queryset

    def perform_destroy(self, instance):
        ensure_product_deletable(instance)
        super().perform_destroy(instance)

    @action(detail=True, methods=["get"])
    def history(self, request, pk=None):
        query = PeriodQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        movements = obtain_history(pk, **query.validated_data)
        page = self.paginate_queryset(movements)
        serializer = MovementSerializer(page if page is not None else movements, many=True)
        if page is not None:
            return self.get_paginated_response(serializer.data)
        return Response(serializer.data)

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        queryset = self.get_queryset().filter(is_active=True, stock__lte=F("stock_minimum")).order_by("stock")
        return Response(self.get_serializer(queryset, many=True).data)


class MovementViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Movement.objects.select_related("product", "responsible", "origin_warehouse", "destination_warehouse")
    serializer_class = MovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "movement.create",
        "recent": "inventory.view",
        "summary": "movement.report",
        "by_user": "movement.report",
    }

    def get_queryset(self):
        queryset = super().get_queryset().order_by("-occurred_at", "-sequence")
        params = self.request.query_params
        if params.get("type"):
            queryset = queryset.filter(type=params["type"])
        if params.get("product"):
            queryset = queryset.filter(product_id=params["product"])
        if params.get("responsible"):
            queryset = queryset.filter(responsible_id=params["responsible"])
        date_from = parse_date(params.get("date_from") or "")
        date_to = parse_date(params.get("date_to") or "")
        if date_from:
            queryset = queryset.filter(occurred_at__date__gte=date_from)
        if date_to:
            queryset = queryset.filter(occurred_at__date__lte=date_to)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = MovementCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        movement = record_movement(
            data["type"],
            data["product"],
            data["quantity"],
            request.user.pk,
            data["motive"],
            origin_warehouse_id=data.get("origin_warehouse"),
            destination_warehouse_id=data.get("destination_warehouse"),
            notes=data.get("notes", ""),
            reference_document=data.get("reference_document", ""),
        )
        payload = MovementSerializer(movement).data
        create_audit_log_from_request(
            request,
            action="movement.create",
            entity="movement",
            entity_id=movement.pk,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["get"])
    def recent(self, request):
        try:
            limit = int(request.query_params.get("limit", 10))
        except ValueError:
            limit = 0
        return Response(MovementSerializer(recent_movements(limit), many=True).data)

    @action(detail=False, methods=["get"])
    def summary(self, request):
        query = PeriodQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(summarize_by_type(**query.validated_data))

    @action(detail=False, methods=["get"], url_path=r"by-user/(?P<user_id>[0-9a-f-]+)")
    def by_user(self, request, user_id=None):
        queryset = self.get_queryset().filter(responsible_id=user_id)
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)
