import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from core.models import AuditLog


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def _json_safe(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def create_audit_log(
    *,
    actor=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    return AuditLog.objects.create(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=_json_safe(before_snapshot),
        after_snapshot=_json_safe(after_snapshot),
        request_id=request_id,
    )


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user and user.is_authenticated else None,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
    )


class AuditedMutationMixin:
    """ModelViewSet mixin that writes an AuditLog row for every create/update/delete."""

    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.{action}",
            entity=self.audit_entity,
            entity_id=instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    @transaction.atomic
    def perform_update(self, serializer):
        # Re-read under the row lock so the edit lands on the committed row.
        model = type(serializer.instance)
        serializer.instance = model.objects.select_for_update().get(pk=serializer.instance.pk)
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        self._audit(action="delete", instance=instance, before_snapshot=before_snapshot)
        instance.delete()
