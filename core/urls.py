from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, UserViewSet, healthz, readyz

router = DefaultRouter()
router.register(r"users", UserViewSet, basename="user")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
