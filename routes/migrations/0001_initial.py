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
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Route",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("number", models.CharField(editable=False, max_length=16, unique=True)),
                ("origin_name", models.CharField(max_length=150)),
                ("origin_address", models.CharField(max_length=255)),
                ("origin_latitude", models.FloatField()),
                ("origin_longitude", models.FloatField()),
                ("destination_name", models.CharField(max_length=150)),
                ("destination_address", models.CharField(max_length=255)),
                ("destination_latitude", models.FloatField()),
                ("destination_longitude", models.FloatField()),
                ("destination_contact_name", models.CharField(blank=True, max_length=150)),
                ("destination_contact_phone", models.CharField(blank=True, max_length=20)),
                ("destination_contact_email", models.EmailField(blank=True, max_length=254)),
                ("scheduled_at", models.DateTimeField()),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("planificada", "Planificada"),
                            ("en_transito", "En tránsito"),
                            ("completada", "Completada"),
                            ("cancelada", "Cancelada"),
                        ],
                        default="planificada",
                        max_length=16,
                    ),
                ),
                (
                    "priority",
                    models.CharField(
                        choices=[("baja", "Baja"), ("media", "Media"), ("alta", "Alta"), ("urgente", "Urgente")],
                        default="media",
                        max_length=16,
                    ),
                ),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, max_length=500)),
                ("distance_km", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("estimated_hours", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("notes", models.CharField(blank=True, max_length=1000)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="created_routes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "driver",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="routes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "vehicle",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="routes",
                        to="fleet.vehicle",
                    ),
                ),
            ],
            options={
                "ordering": ["-scheduled_at"],
                "indexes": [
                    models.Index(fields=["state", "scheduled_at"], name="route_state_scheduled_idx"),
                    models.Index(fields=["driver", "state"], name="route_driver_state_idx"),
                    models.Index(fields=["vehicle", "state"], name="route_vehicle_state_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            (Q(state="cancelada") & ~Q(cancellation_reason=""))
                            | (~Q(state="cancelada") & Q(cancellation_reason=""))
                        ),
                        name="route_cancellation_reason_iff_cancelled",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RouteItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity_planned", models.PositiveIntegerField()),
                ("quantity_delivered", models.PositiveIntegerField(default=0)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="route_items",
                        to="inventory.product",
                    ),
                ),
                (
                    "route",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="routes.route",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["route", "product"], name="uniq_route_item_product"),
                    models.CheckConstraint(condition=Q(quantity_planned__gt=0), name="route_item_planned_positive"),
                    models.CheckConstraint(
                        condition=Q(quantity_delivered__lte=F("quantity_planned")),
                        name="route_item_delivered_lte_planned",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RouteTrackingPoint",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sequence", models.PositiveIntegerField()),
                ("latitude", models.FloatField()),
                ("longitude", models.FloatField()),
                ("speed", models.FloatField(default=0)),
                ("note", models.CharField(blank=True, max_length=255)),
                ("recorded_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "route",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tracking_points",
                        to="routes.route",
                    ),
                ),
            ],
            options={
                "ordering": ["route", "sequence"],
                "constraints": [
                    models.UniqueConstraint(fields=["route", "sequence"], name="uniq_route_tracking_sequence"),
                ],
            },
        ),
    ]
