import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from common.records import AppendOnlyMixin
from fleet.models import Vehicle
from inventory.models import Product
from routes.models import Route


class Delivery(models.Model):
    class State(models.TextChoices):
        PENDIENTE = "pendiente", "Pendiente"
        EN_PROCESO = "en_proceso", "En proceso"
        ENTREGADO = "entregado", "Entregado"
        RETRASADO = "retrasado", "Retrasado"
        CANCELADO = "cancelado", "Cancelado"

    TERMINAL_STATES = (State.ENTREGADO, State.CANCELADO)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=16, unique=True, editable=False)
    route = models.ForeignKey(Route, on_delete=models.SET_NULL, null=True, blank=True, related_name="deliveries")
    driver = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="deliveries")
    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="deliveries")
    client_name = models.CharField(max_length=150)
    client_address = models.CharField(max_length=255)
    client_latitude = models.FloatField()
    client_longitude = models.FloatField()
    client_phone = models.CharField(max_length=20, blank=True)
    client_email = models.EmailField(blank=True)
    origin_name = models.CharField(max_length=150)
    origin_address = models.CharField(max_length=255)
    origin_latitude = models.FloatField()
    origin_longitude = models.FloatField()
    # Written only through deliveries.services.DELIVERY_TRANSITIONS.
    state = models.CharField(max_length=16, choices=State, default=State.PENDIENTE)
    scheduled_at = models.DateTimeField()
    started_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    tracking_active = models.BooleanField(default=False)
    current_latitude = models.FloatField(null=True, blank=True)
    current_longitude = models.FloatField(null=True, blank=True)
    position_updated_at = models.DateTimeField(null=True, blank=True)
    total_distance_km = models.FloatField(default=0)
    traveled_distance_km = models.FloatField(default=0)
    estimated_arrival_minutes = models.PositiveIntegerField(null=True, blank=True)
    signature = models.TextField(blank=True)
    photo = models.TextField(blank=True)
    rating = models.PositiveSmallIntegerField(null=True, blank=True)
    delay_reason = models.CharField(max_length=500, blank=True)
    cancellation_reason = models.CharField(max_length=500, blank=True)
    notes = models.CharField(max_length=500, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_deliveries",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-scheduled_at"]
        verbose_name_plural = "deliveries"
        indexes = [
            models.Index(fields=["state", "scheduled_at"], name="delivery_state_scheduled_idx"),
            models.Index(fields=["driver", "state"], name="delivery_driver_state_idx"),
            models.Index(fields=["route"], name="delivery_route_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(rating__isnull=True) | Q(rating__gte=1, rating__lte=5),
                name="delivery_rating_range",
            ),
            models.CheckConstraint(
                condition=Q(traveled_distance_km__gte=0) & Q(total_distance_km__gte=0),
                name="delivery_distances_non_negative",
            ),
        ]

    def __str__(self):
        return self.number


class DeliveryItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="delivery_items")
    quantity_programmed = models.PositiveIntegerField()
    quantity_delivered = models.PositiveIntegerField(default=0)
    note = models.CharField(max_length=255, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["delivery", "product"], name="uniq_delivery_item_product"),
            models.CheckConstraint(condition=Q(quantity_programmed__gt=0), name="delivery_item_programmed_positive"),
            models.CheckConstraint(
                condition=Q(quantity_delivered__lte=F("quantity_programmed")),
                name="delivery_item_delivered_lte_programmed",
            ),
        ]


class DeliveryTrackingPoint(AppendOnlyMixin, models.Model):
    immutable_message = "Tracking points cannot be modified or deleted."

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="tracking_points")
    sequence = models.PositiveIntegerField()
    latitude = models.FloatField()
    longitude = models.FloatField()
    speed = models.FloatField(default=0)
    progress = models.FloatField(default=0)
    label = models.CharField(max_length=255, blank=True)
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["delivery", "sequence"]
        constraints = [
            models.UniqueConstraint(fields=["delivery", "sequence"], name="uniq_delivery_tracking_sequence"),
            models.CheckConstraint(
                condition=Q(progress__gte=0, progress__lte=100),
                name="delivery_tracking_progress_range",
            ),
        ]


def tracking_progress(delivery):
    last_point = delivery.tracking_points.order_by("-sequence").first()
    return last_point.progress if last_point else 0


def items_progress(delivery):
    programmed = delivered = 0
    for item in delivery.items.all():
        programmed += item.quantity_programmed
        delivered += item.quantity_delivered
    if programmed == 0:
        return 0
    return round(delivered / programmed * 100)


def is_late(delivery, now=None):
    if delivery.state in Delivery.TERMINAL_STATES:
        return False
    return delivery.scheduled_at < (now or timezone.now())
