import uuid

from django.conf import settings
from django.core.validators import MinValueValidator, RegexValidator
from django.db import models
from django.db.models import F, Q

from common.records import AppendOnlyMixin

product_code_validator = RegexValidator(
    regex=r"^[A-Z0-9-]+$",
    message="Code may only contain uppercase letters, digits and hyphens.",
)


class Warehouse(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    address = models.CharField(max_length=255)
    city = models.CharField(max_length=100)
    state = models.CharField(max_length=100, blank=True)
    capacity = models.PositiveIntegerField(null=True, blank=True)
    manager = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="managed_warehouses",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active"], name="warehouse_active_idx"),
        ]

    def __str__(self):
        return self.name


class Product(models.Model):
    class Category(models.TextChoices):
        ELECTRONICA = "Electrónica", "Electrónica"
        ALIMENTOS = "Alimentos", "Alimentos"
        TEXTIL = "Textil", "Textil"
        FARMACEUTICO = "Farmacéutico", "Farmacéutico"
        INDUSTRIAL = "Industrial", "Industrial"
        OTRO = "Otro", "Otro"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True, validators=[product_code_validator])
    name = models.CharField(max_length=150)
    description = models.CharField(max_length=500, blank=True)
    category = models.CharField(max_length=32, choices=Category, default=Category.OTRO)
    # Written only by inventory.services.record_movement.
    stock = models.IntegerField(default=0)
    stock_minimum = models.PositiveIntegerField(default=10)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    warehouse = models.ForeignKey(Warehouse, on_delete=models.PROTECT, related_name="products")
    is_active = models.BooleanField(default=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["warehouse", "is_active"], name="product_warehouse_active_idx"),
            models.Index(fields=["category"], name="product_category_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(stock__gte=0), name="product_stock_non_negative"),
            models.CheckConstraint(condition=Q(price__gte=0), name="product_price_non_negative"),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"

    def save(self, *args, **kwargs):
        if self.code:
            self.code = self.code.strip().upper()
        super().save(*args, **kwargs)


class Movement(AppendOnlyMixin, models.Model):
    class Type(models.TextChoices):
        ENTRADA = "entrada", "Entrada"
        SALIDA = "salida", "Salida"
        TRANSFERENCIA = "transferencia", "Transferencia"

    class Motive(models.TextChoices):
        COMPRA = "compra", "Compra"
        DEVOLUCION = "devolucion", "Devolución"
        AJUSTE_INVENTARIO = "ajuste_inventario", "Ajuste de inventario"
        VENTA = "venta", "Venta"
        DANO = "daño", "Daño"
        VENCIMIENTO = "vencimiento", "Vencimiento"
        TRANSFERENCIA_BODEGAS = "transferencia_bodegas", "Transferencia entre bodegas"
        OTRO = "otro", "Otro"

    immutable_message = "Movements cannot be modified or deleted once recorded."

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    type = models.CharField(max_length=16, choices=Type)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="movements")
    quantity = models.PositiveIntegerField()
    responsible = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="movements")
    motive = models.CharField(max_length=32, choices=Motive)
    origin_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="outgoing_movements",
    )
    destination_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="incoming_movements",
    )
    stock_before = models.IntegerField()
    stock_after = models.IntegerField()
    sequence = models.PositiveIntegerField()
    notes = models.CharField(max_length=500, blank=True)
    reference_document = models.CharField(max_length=100, blank=True)
    occurred_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-occurred_at", "-sequence"]
        indexes = [
            models.Index(fields=["product", "-sequence"], name="movement_product_seq_idx"),
            models.Index(fields=["type", "occurred_at"], name="movement_type_occurred_idx"),
            models.Index(fields=["responsible", "occurred_at"], name="movement_responsible_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["product", "sequence"], name="uniq_movement_product_sequence"),
            models.CheckConstraint(condition=Q(quantity__gt=0), name="movement_quantity_positive"),
            models.CheckConstraint(condition=Q(stock_after__gte=0), name="movement_stock_after_non_negative"),
            models.CheckConstraint(
                condition=(
                    Q(type="entrada", stock_after=F("stock_before") + F("quantity"))
                    | Q(type__in=["salida", "transferencia"], stock_after=F("stock_before") - F("quantity"))
                ),
                name="movement_snapshot_consistent",
            ),
        ]

    def __str__(self):
        return f"{self.type} {self.quantity} x {self.product_id}"


def is_low_stock(product):
    return product.stock <= product.stock_minimum


def inventory_value(product):
    return product.stock * product.price


def movement_delta(movement):
    return movement.stock_after - movement.stock_before
