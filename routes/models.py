import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from common.records import AppendOnlyMixin
from fleet.models import Vehicle
from inventory.models import Product


class Route(models.Model):
    class State(models.TextChoices):
        PLANIFICADA = "planificada", "Planificada"
        EN_TRANSITO = "en_transito", "En tránsito"
        COMPLETADA = "completada", "Completada"
        CANCELADA = "cancelada", "Cancelada"

    class Priority(models.TextChoices):
        BAJA = "baja", "Baja"
        MEDIA = "media", "Media"
        ALTA = "alta", "Alta"
        URGENTE = "urgente", "Urgente"

    ACTIVE_STATES = (State.PLANIFICADA, State.EN_TRANSITO)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=16, unique=True, editable=False)
    origin_name = models.CharField(max_length=150)
    origin_address = models.CharField(max_length=255)
    origin_latitude = models.FloatField()
    origin_longitude = models.FloatField()
    destination_name = models.CharField(max_length=150)
    destination_address = models.CharField(max_length=255)
    destination_latitude = models.FloatField()
    destination_longitude = models.FloatField()
    destination_contact_name = models.CharField(max_length=150, blank=True)
    destination_contact_phone = models.CharField(max_length=20, blank=True)
    destination_contact_email = models.EmailField(blank=True)
    scheduled_at = models.DateTimeField()
    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="routes")
    driver = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="routes")
    # Written only through routes.services.ROUTE_TRANSITIONS.
    state = models.CharField(max_length=16, choices=State, default=State.PLANIFICADA)
    priority = models.CharField(max_length=16, choices=Priority, default=Priority.MEDIA)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=500, blank=True)
    distance_km = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    estimated_hours = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    notes = models.CharField(max_length=1000, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_routes",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-scheduled_at"]
        indexes = [
            models.Index(fields=["state", "scheduled_at"], name="route_state_scheduled_idx"),
            models.Index(fields=["driver", "state"], name="route_driver_state_idx"),
            models.Index(fields=["vehicle", "state"], name="route_vehicle_state_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    (Q(state="cancelada") & ~Q(cancellation_reason=""))
                    | (~Q(state="cancelada") & Q(cancellation_reason=""))
                ),
                name="route_cancellation_reason_iff_cancelled",
            ),
        ]

    def __str__(self):
        return self.number


class RouteItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    route = models.ForeignKey(Route, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="route_items")
    quantity_planned = models.PositiveIntegerField()
    quantity_delivered = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["route", "product"], name="uniq_route_item_product"),
            models.CheckConstraint(condition=Q(quantity_planned__gt=0), name="route_item_planned_positive"),
            models.CheckConstraint(
                condition=Q(quantity_delivered__lte=F("quantity_planned")),
                name="route_item_delivered_lte_planned",
            ),
        ]


class RouteTrackingPoint(AppendOnlyMixin, models.Model):
    immutable_message = "Tracking points cannot be modified or deleted."

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    route = models.ForeignKey(Route, on_delete=models.CASCADE, related_name="tracking_points")
    sequence = models.PositiveIntegerField()
    latitude = models.FloatField()
    longitude = models.FloatField()
    speed = models.FloatField(default=0)
    note = models.CharField(max_length=255, blank=True)
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["route", "sequence"]
        constraints = [
            models.UniqueConstraint(fields=["route", "sequence"], name="uniq_route_tracking_sequence"),
        ]


def delivery_progress(route):
    """Percentage of planned units delivered, rounded to an integer."""
    planned = delivered = 0
    for item in route.items.all():
        planned += item.quantity_planned
        delivered += item.quantity_delivered
    if planned == 0:
        return 0
    return round(delivered / planned * 100)


def is_late(route, now=None):
    if route.state in (Route.State.COMPLETADA, Route.State.CANCELADA):
        return False
    return route.scheduled_at < (now or timezone.now())


def actual_duration_hours(route):
    if route.started_at is None or route.finished_at is None:
        return None
    return round((route.finished_at - route.started_at).total_seconds() / 3600, 2)
