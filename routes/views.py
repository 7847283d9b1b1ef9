from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin
from common.permissions import AssignedDriverPermission, RoleCapabilityPermission, user_has_capability
from inventory.serializers import PeriodQuerySerializer
from routes.models import Route
from routes.serializers import (
    DeliveredQuantitiesSerializer,
    RouteCreateSerializer,
    RouteSerializer,
    RouteTrackingPointSerializer,
    RouteTransitionSerializer,
    TrackingInputSerializer,
)
from routes.services import (
    active_routes_for_driver,
    create_route,
    ensure_route_deletable,
    register_delivered_quantities,
    register_route_tracking,
    route_history,
    start_route,
    transition_route,
)


class RouteViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Route.objects.select_related("vehicle", "driver").prefetch_related("items__product")
    serializer_class = RouteSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission, AssignedDriverPermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    permission_action_map = {
        "list": "route.view",
        "retrieve": "route.view",
        "tracking": "route.view",
        "history": "route.view",
        "active": "route.view",
        "create": "route.manage",
        "partial_update": "route.manage",
        "destroy": "route.delete",
        "transition": "route.operate",
        "start": "route.operate",
        "register_tracking": "route.operate",
        "deliveries": "route.operate",
    }
    audit_entity = "route"

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("state"):
            queryset = queryset.filter(state=params["state"])
        if params.get("driver"):
            queryset = queryset.filter(driver_id=params["driver"])
        if params.get("vehicle"):
            queryset = queryset.filter(vehicle_id=params["vehicle"])
        if params.get("priority"):
            queryset = queryset.filter(priority=params["priority"])
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = RouteCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        route = create_route(
            data["origin"],
            data["destination"],
            data["scheduled_at"],
            data["vehicle"],
            data["driver"],
            data["items"],
            priority=data["priority"],
            distance_km=data.get("distance_km"),
            estimated_hours=data.get("estimated_hours"),
            notes=data.get("notes", ""),
            created_by=request.user,
        )
        payload = self.get_serializer(route).data
        self._audit(action="create", instance=route, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def perform_destroy(self, instance):
        ensure_route_deletable(instance)
        super().perform_destroy(instance)

    def _respond_with_transition(self, route_before, route):
        before_snapshot = self.get_serializer(route_before).data
        payload = self.get_serializer(Route.objects.get(pk=route.pk)).data
        self._audit(action="transition", instance=route, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    @action(detail=True, methods=["post"])
    def transition(self, request, pk=None):
        route = self.get_object()
        serializer = RouteTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        target = serializer.validated_data["state"]
        if target == Route.State.CANCELADA and not user_has_capability(request.user, "route.manage"):
            raise PermissionDenied("Only coordinators can cancel routes.")
        updated = transition_route(route.pk, target, reason=serializer.validated_data.get("reason"))
        return self._respond_with_transition(route, updated)

    @action(detail=True, methods=["post"])
    def start(self, request, pk=None):
        route = self.get_object()
        return self._respond_with_transition(route, start_route(route.pk))

    @action(detail=True, methods=["get"])
    def tracking(self, request, pk=None):
        route = self.get_object()
        points = route.tracking_points.order_by("sequence")
        return Response(RouteTrackingPointSerializer(points, many=True).data)

    @tracking.mapping.post
    def register_tracking(self, request, pk=None):
        route = self.get_object()
        serializer = TrackingInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        point = register_route_tracking(route.pk, **serializer.validated_data)
        return Response(RouteTrackingPointSerializer(point).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def deliveries(self, request, pk=None):
        route = self.get_object()
        serializer = DeliveredQuantitiesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        updated = register_delivered_quantities(route.pk, serializer.validated_data["deliveries"])
        payload = self.get_serializer(Route.objects.get(pk=updated.pk)).data
        self._audit(action="deliveries", instance=updated, after_snapshot=payload)
        return Response(payload)

    @action(detail=False, methods=["get"])
    def history(self, request):
        query = PeriodQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        queryset, counts = route_history(driver_id=request.query_params.get("driver"), **query.validated_data)
        page = self.paginate_queryset(queryset)
        response = self.get_paginated_response(self.get_serializer(page, many=True).data)
        response.data.update(counts)
        return response

    @action(detail=False, methods=["get"])
    def active(self, request):
        driver_id = request.query_params.get("driver") or request.user.pk
        return Response(self.get_serializer(active_routes_for_driver(driver_id), many=True).data)
