import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models
from django.db.models import Q


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Vehicle",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "plate",
                    models.CharField(
                        max_length=10,
                        unique=True,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Plate must be 6 to 10 uppercase letters or digits.",
                                regex="^[A-Z0-9]{6,10}$",
                            )
                        ],
                    ),
                ),
                ("brand", models.CharField(max_length=50)),
                ("model", models.CharField(max_length=50)),
                (
                    "year",
                    models.PositiveIntegerField(
                        validators=[
                            django.core.validators.MinValueValidator(1900),
                            django.core.validators.MaxValueValidator(2100),
                        ]
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("camion", "Camión"),
                            ("camioneta", "Camioneta"),
                            ("van", "Van"),
                            ("motocicleta", "Motocicleta"),
                        ],
                        max_length=16,
                    ),
                ),
                (
                    "load_capacity",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=10,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                (
                    "capacity_unit",
                    models.CharField(
                        choices=[("kg", "Kilogramos"), ("toneladas", "Toneladas"), ("m3", "Metros cúbicos")],
                        default="kg",
                        max_length=16,
                    ),
                ),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("disponible", "Disponible"),
                            ("en_ruta", "En ruta"),
                            ("mantenimiento", "Mantenimiento"),
                        ],
                        default="disponible",
                        max_length=16,
                    ),
                ),
                ("mileage", models.PositiveIntegerField(default=0)),
                ("last_maintenance", models.DateField(blank=True, null=True)),
                ("next_maintenance", models.DateField(blank=True, null=True)),
                ("notes", models.CharField(blank=True, max_length=500)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "assigned_driver",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="assigned_vehicles",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["plate"],
                "indexes": [
                    models.Index(fields=["state"], name="vehicle_state_idx"),
                    models.Index(fields=["assigned_driver"], name="vehicle_driver_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=~Q(state="en_ruta") | Q(assigned_driver__isnull=False),
                        name="vehicle_en_ruta_requires_driver",
                    ),
                ],
            },
        ),
    ]
