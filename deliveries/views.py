from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle

from common.audit import AuditedMutationMixin
from common.permissions import AssignedDriverPermission, RoleCapabilityPermission
from deliveries.models import Delivery
from deliveries.serializers import (
    CompleteDeliverySerializer,
    DeliveryCreateSerializer,
    DeliverySerializer,
    DeliveryTrackingPointSerializer,
    ReasonSerializer,
)
from deliveries.services import (
    cancel_delivery,
    complete_delivery,
    create_delivery,
    create_delivery_from_route,
    delivery_history,
    ensure_delivery_deletable,
    mark_delayed,
    resume_delivery,
    simulate_step,
    start_tracking,
)
from inventory.serializers import PeriodQuerySerializer


class DeliveryViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Delivery.objects.select_related("route", "driver", "vehicle").prefetch_related("items__product")
    serializer_class = DeliverySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission, AssignedDriverPermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    permission_action_map = {
        "list": "delivery.view",
        "retrieve": "delivery.view",
        "tracking": "delivery.view",
        "history": "delivery.view",
        "create": "delivery.manage",
        "partial_update": "delivery.manage",
        "from_route": "delivery.manage",
        "cancel": "delivery.manage",
        "destroy": "delivery.delete",
        "start_tracking": "delivery.operate",
        "simulate_step": "delivery.operate",
        "delay": "delivery.operate",
        "resume": "delivery.operate",
        "complete": "delivery.operate",
    }
    audit_entity = "delivery"
    throttle_scope = None

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("state"):
            queryset = queryset.filter(state=params["state"])
        if params.get("driver"):
            queryset = queryset.filter(driver_id=params["driver"])
        if params.get("route"):
            queryset = queryset.filter(route_id=params["route"])
        if params.get("tracking_active") in {"true", "false"}:
            queryset = queryset.filter(tracking_active=params["tracking_active"] == "true")
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = DeliveryCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        delivery = create_delivery(
            driver_id=data["driver"],
            vehicle_id=data["vehicle"],
            client=data["client"],
            origin=data["origin"],
            items=data["items"],
            scheduled_at=data["scheduled_at"],
            route_id=data.get("route"),
            total_distance_km=data.get("total_distance_km"),
            notes=data.get("notes", ""),
            created_by=request.user,
        )
        return self._created(delivery)

    def _created(self, delivery):
        payload = self.get_serializer(Delivery.objects.get(pk=delivery.pk)).data
        self._audit(action="create", instance=delivery, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def perform_destroy(self, instance):
        ensure_delivery_deletable(instance)
        super().perform_destroy(instance)

    def _run(self, action_name, operation, *args, **kwargs):
        delivery = self.get_object()
        before_snapshot = self.get_serializer(delivery).data
        updated = operation(delivery.pk, *args, **kwargs)
        payload = self.get_serializer(Delivery.objects.get(pk=updated.pk)).data
        self._audit(action=action_name, instance=updated, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    @action(detail=False, methods=["post"], url_path=r"from-route/(?P<route_id>[0-9a-f-]+)")
    def from_route(self, request, route_id=None):
        return self._created(create_delivery_from_route(route_id, created_by=request.user))

    @action(detail=True, methods=["post"], url_path="start-tracking")
    def start_tracking(self, request, pk=None):
        return self._run("start_tracking", start_tracking)

    @action(
        detail=True,
        methods=["post"],
        url_path="simulate-step",
        throttle_classes=[ScopedRateThrottle],
        throttle_scope="tracking_simulation",
    )
    def simulate_step(self, request, pk=None):
        delivery = self.get_object()
        updated = simulate_step(delivery.pk)
        return Response(self.get_serializer(Delivery.objects.get(pk=updated.pk)).data)

    @action(detail=True, methods=["post"])
    def delay(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return self._run("delay", mark_delayed, serializer.validated_data["reason"])

    @action(detail=True, methods=["post"])
    def resume(self, request, pk=None):
        return self._run("resume", resume_delivery)

    @action(detail=True, methods=["post"])
    def complete(self, request, pk=None):
        serializer = CompleteDeliverySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        return self._run(
            "complete",
            complete_delivery,
            signature=data.get("signature"),
            photo=data.get("photo"),
            rating=data.get("rating"),
            items_delivered=data.get("items"),
        )

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return self._run("cancel", cancel_delivery, serializer.validated_data["reason"])

    @action(detail=True, methods=["get"])
    def tracking(self, request, pk=None):
        delivery = self.get_object()
        points = delivery.tracking_points.order_by("sequence")
        return Response(DeliveryTrackingPointSerializer(points, many=True).data)

    @action(detail=False, methods=["get"])
    def history(self, request):
        query = PeriodQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        queryset = delivery_history(driver_id=request.query_params.get("driver"), **query.validated_data)
        page = self.paginate_queryset(queryset)
        return self.get_paginated_response(self.get_serializer(page, many=True).data)
