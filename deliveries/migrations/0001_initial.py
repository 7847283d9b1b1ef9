import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models
from django.db.models import F, Q


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("fleet", "0001_initial"),
        ("inventory", "0001_initial"),
        ("routes", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Delivery",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("number", models.CharField(editable=False, max_length=16, unique=True)),
                ("client_name", models.CharField(max_length=150)),
                ("client_address", models.CharField(max_length=255)),
                ("client_latitude", models.FloatField()),
                ("client_longitude", models.FloatField()),
                ("client_phone", models.CharField(blank=True, max_length=20)),
                ("client_email", models.EmailField(blank=True, max_length=254)),
                ("origin_name", models.CharField(max_length=150)),
                ("origin_address", models.CharField(max_length=255)),
                ("origin_latitude", models.FloatField()),
                ("origin_longitude", models.FloatField()),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("pendiente", "Pendiente"),
                            ("en_proceso", "En proceso"),
                            ("entregado", "Entregado"),
                            ("retrasado", "Retrasado"),
                            ("cancelado", "Cancelado"),
                        ],
                        default="pendiente",
                        max_length=16,
                    ),
                ),
                ("scheduled_at", models.DateTimeField()),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("tracking_active", models.BooleanField(default=False)),
                ("current_latitude", models.FloatField(blank=True, null=True)),
                ("current_longitude", models.FloatField(blank=True, null=True)),
                ("position_updated_at", models.DateTimeField(blank=True, null=True)),
                ("total_distance_km", models.FloatField(default=0)),
                ("traveled_distance_km", models.FloatField(default=0)),
                ("estimated_arrival_minutes", models.PositiveIntegerField(blank=True, null=True)),
                ("signature", models.TextField(blank=True)),
                ("photo", models.TextField(blank=True)),
                ("rating", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("delay_reason", models.CharField(blank=True, max_length=500)),
                ("cancellation_reason", models.CharField(blank=True, max_length=500)),
                ("notes", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="created_deliveries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "driver",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliveries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "route",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="deliveries",
                        to="routes.route",
                    ),
                ),
                (
                    "vehicle",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliveries",
                        to="fleet.vehicle",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "deliveries",
                "ordering": ["-scheduled_at"],
                "indexes": [
                    models.Index(fields=["state", "scheduled_at"], name="delivery_state_scheduled_idx"),
                    models.Index(fields=["driver", "state"], name="delivery_driver_state_idx"),
                    models.Index(fields=["route"], name="delivery_route_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=Q(rating__isnull=True) | Q(rating__gte=1, rating__lte=5),
                        name="delivery_rating_range",
                    ),
                    models.CheckConstraint(
                        condition=Q(traveled_distance_km__gte=0) & Q(total_distance_km__gte=0),
                        name="delivery_distances_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity_programmed", models.PositiveIntegerField()),
                ("quantity_delivered", models.PositiveIntegerField(default=0)),
                ("note", models.CharField(blank=True, max_length=255)),
                (
                    "delivery",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="deliveries.delivery",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="delivery_items",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["delivery", "product"], name="uniq_delivery_item_product"),
                    models.CheckConstraint(
                        condition=Q(quantity_programmed__gt=0), name="delivery_item_programmed_positive"
                    ),
                    models.CheckConstraint(
                        condition=Q(quantity_delivered__lte=F("quantity_programmed")),
                        name="delivery_item_delivered_lte_programmed",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryTrackingPoint",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sequence", models.PositiveIntegerField()),
                ("latitude", models.FloatField()),
                ("longitude", models.FloatField()),
                ("speed", models.FloatField(default=0)),
                ("progress", models.FloatField(default=0)),
                ("label", models.CharField(blank=True, max_length=255)),
                ("recorded_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "delivery",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tracking_points",
                        to="deliveries.delivery",
                    ),
                ),
            ],
            options={
                "ordering": ["delivery", "sequence"],
                "constraints": [
                    models.UniqueConstraint(fields=["delivery", "sequence"], name="uniq_delivery_tracking_sequence"),
                    models.CheckConstraint(
                        condition=Q(progress__gte=0, progress__lte=100),
                        name="delivery_tracking_progress_range",
                    ),
                ],
            },
        ),
    ]
