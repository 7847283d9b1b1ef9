import csv
import logging

from django.contrib.auth import get_user_model
from django.db import connections
from django.db.utils import DatabaseError
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from core.models import AuditLog
from core.serializers import AuditLogSerializer, EmailOrUsernameTokenObtainPairSerializer, UserSerializer

User = get_user_model()
logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class UserViewSet(viewsets.ModelViewSet):
    queryset = User.objects.all().order_by("username")
    serializer_class = UserSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "user.manage",
        "retrieve": "user.manage",
        "create": "user.manage",
        "update": "user.manage",
        "partial_update": "user.manage",
        "destroy": "user.manage",
        "drivers": "route.manage",
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        role = self.request.query_params.get("role")
        is_active = self.request.query_params.get("is_active")
        if role:
            queryset = queryset.filter(role=role)
        if is_active in {"true", "false"}:
            queryset = queryset.filter(is_active=is_active == "true")
        return queryset

    @action(detail=False, methods=["get"])
    def drivers(self, request):
        queryset = User.objects.filter(role=User.Role.CONDUCTOR, is_active=True).order_by("first_name", "username")
        serializer = self.get_serializer(queryset, many=True)
        return Response(serializer.data)

    def perform_create(self, serializer):
        user = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="user.create",
            entity="user",
            entity_id=user.id,
            after_snapshot=self.get_serializer(user).data,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        user = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="user.update",
            entity="user",
            entity_id=user.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(user).data,
        )

    def perform_destroy(self, instance):
        if instance.pk == self.request.user.pk:
            raise ValidationError("You cannot deactivate your own account.")
        before_snapshot = self.get_serializer(instance).data
        # Users own ledger and route history, so deletion only deactivates.
        instance.is_active = False
        instance.save(update_fields=["is_active"])
        create_audit_log_from_request(
            self.request,
            action="user.deactivate",
            entity="user",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit.view", "retrieve": "audit.view", "export": "audit.view"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
