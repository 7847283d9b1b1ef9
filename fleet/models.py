import uuid
from datetime import timedelta

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

MAINTENANCE_WARNING_DAYS = 7

plate_validator = RegexValidator(
    regex=r"^[A-Z0-9]{6,10}$",
    message="Plate must be 6 to 10 uppercase letters or digits.",
)


class Vehicle(models.Model):
    class Kind(models.TextChoices):
        CAMION = "camion", "Camión"
        CAMIONETA = "camioneta", "Camioneta"
        VAN = "van", "Van"
        MOTOCICLETA = "motocicleta", "Motocicleta"

    class CapacityUnit(models.TextChoices):
        KG = "kg", "Kilogramos"
        TONELADAS = "toneladas", "Toneladas"
        M3 = "m3", "Metros cúbicos"

    class State(models.TextChoices):
        DISPONIBLE = "disponible", "Disponible"
        EN_RUTA = "en_ruta", "En ruta"
        MANTENIMIENTO = "mantenimiento", "Mantenimiento"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    plate = models.CharField(max_length=10, unique=True, validators=[plate_validator])
    brand = models.CharField(max_length=50)
    model = models.CharField(max_length=50)
    year = models.PositiveIntegerField(validators=[MinValueValidator(1900), MaxValueValidator(2100)])
    kind = models.CharField(max_length=16, choices=Kind)
    load_capacity = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    capacity_unit = models.CharField(max_length=16, choices=CapacityUnit, default=CapacityUnit.KG)
    # Written through fleet.services so route transitions can hold the row lock.
    state = models.CharField(max_length=16, choices=State, default=State.DISPONIBLE)
    assigned_driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="assigned_vehicles",
    )
    mileage = models.PositiveIntegerField(default=0)
    last_maintenance = models.DateField(null=True, blank=True)
    next_maintenance = models.DateField(null=True, blank=True)
    notes = models.CharField(max_length=500, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["plate"]
        indexes = [
            models.Index(fields=["state"], name="vehicle_state_idx"),
            models.Index(fields=["assigned_driver"], name="vehicle_driver_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(state="en_ruta") | Q(assigned_driver__isnull=False),
                name="vehicle_en_ruta_requires_driver",
            ),
        ]

    def __str__(self):
        return f"{self.plate} ({self.brand} {self.model})"

    def save(self, *args, **kwargs):
        if self.plate:
            self.plate = self.plate.strip().upper()
        super().save(*args, **kwargs)


def requires_maintenance(vehicle, today=None):
    if vehicle.next_maintenance is None:
        return False
    today = today or timezone.localdate()
    return vehicle.next_maintenance - today <= timedelta(days=MAINTENANCE_WARNING_DAYS)
