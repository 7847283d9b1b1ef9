from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin
from common.exceptions import InvalidStateError
from common.permissions import RoleCapabilityPermission
from fleet.models import Vehicle
from fleet.serializers import AssignDriverSerializer, ChangeStateSerializer, VehicleSerializer
from fleet.services import assign_driver, available_vehicles, change_state, release_driver


class VehicleViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Vehicle.objects.select_related("assigned_driver")
    serializer_class = VehicleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "fleet.view",
        "retrieve": "fleet.view",
        "available": "fleet.view",
        "create": "fleet.manage",
        "update": "fleet.manage",
        "partial_update": "fleet.manage",
        "destroy": "fleet.manage",
        "assign_driver": "fleet.manage",
        "change_state": "fleet.manage",
        "release_driver": "fleet.manage",
    }
    audit_entity = "vehicle"

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("state"):
            queryset = queryset.filter(state=params["state"])
        if params.get("kind"):
            queryset = queryset.filter(kind=params["kind"])
        if params.get("is_active") in {"true", "false"}:
            queryset = queryset.filter(is_active=params["is_active"] == "true")
        return queryset

    def perform_destroy(self, instance):
        if instance.state == Vehicle.State.EN_RUTA:
            raise InvalidStateError(
                "A vehicle on route cannot be deleted.",
                details={"vehicle_id": str(instance.pk)},
            )
        super().perform_destroy(instance)

    def _run(self, request, action_name, operation, *args):
        before_snapshot = self.get_serializer(self.get_object()).data
        vehicle = operation(*args)
        payload = self.get_serializer(vehicle).data
        self._audit(action=action_name, instance=vehicle, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    @action(detail=False, methods=["get"])
    def available(self, request):
        return Response(self.get_serializer(available_vehicles(), many=True).data)

    @action(detail=True, methods=["post"], url_path="assign-driver")
    def assign_driver(self, request, pk=None):
        serializer = AssignDriverSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return self._run(request, "assign_driver", assign_driver, pk, serializer.validated_data["driver"])

    @action(detail=True, methods=["post"], url_path="change-state")
    def change_state(self, request, pk=None):
        serializer = ChangeStateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return self._run(request, "change_state", change_state, pk, serializer.validated_data["state"])

    @action(detail=True, methods=["post"], url_path="release-driver")
    def release_driver(self, request, pk=None):
        return self._run(request, "release_driver", release_driver, pk)
