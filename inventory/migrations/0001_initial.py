import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models
from django.db.models import F, Q


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Warehouse",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100, unique=True)),
                ("address", models.CharField(max_length=255)),
                ("city", models.CharField(max_length=100)),
                ("state", models.CharField(blank=True, max_length=100)),
                ("capacity", models.PositiveIntegerField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "manager",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="managed_warehouses",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["is_active"], name="warehouse_active_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "code",
                    models.CharField(
                        max_length=64,
                        unique=True,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Code may only contain uppercase letters, digits and hyphens.",
                                regex="^[A-Z0-9-]+$",
                            )
                        ],
                    ),
                ),
                ("name", models.CharField(max_length=150)),
                ("description", models.CharField(blank=True, max_length=500)),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("Electrónica", "Electrónica"),
                            ("Alimentos", "Alimentos"),
                            ("Textil", "Textil"),
                            ("Farmacéutico", "Farmacéutico"),
                            ("Industrial", "Industrial"),
                            ("Otro", "Otro"),
                        ],
                        default="Otro",
                        max_length=32,
                    ),
                ),
                ("stock", models.IntegerField(default=0)),
                ("stock_minimum", models.PositiveIntegerField(default=10)),
                (
                    "price",
                    models.DecimalField(
                        decimal_places=2,
                        default=0,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "warehouse",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="products",
                        to="inventory.warehouse",
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["warehouse", "is_active"], name="product_warehouse_active_idx"),
                    models.Index(fields=["category"], name="product_category_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(stock__gte=0), name="product_stock_non_negative"),
                    models.CheckConstraint(condition=Q(price__gte=0), name="product_price_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Movement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "type",
                    models.CharField(
                        choices=[("entrada", "Entrada"), ("salida", "Salida"), ("transferencia", "Transferencia")],
                        max_length=16,
                    ),
                ),
                ("quantity", models.PositiveIntegerField()),
                (
                    "motive",
                    models.CharField(
                        choices=[
                            ("compra", "Compra"),
                            ("devolucion", "Devolución"),
                            ("ajuste_inventario", "Ajuste de inventario"),
                            ("venta", "Venta"),
                            ("daño", "Daño"),
                            ("vencimiento", "Vencimiento"),
                            ("transferencia_bodegas", "Transferencia entre bodegas"),
                            ("otro", "Otro"),
                        ],
                        max_length=32,
                    ),
                ),
                ("stock_before", models.IntegerField()),
                ("stock_after", models.IntegerField()),
                ("sequence", models.PositiveIntegerField()),
                ("notes", models.CharField(blank=True, max_length=500)),
                ("reference_document", models.CharField(blank=True, max_length=100)),
                ("occurred_at", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "destination_warehouse",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incoming_movements",
                        to="inventory.warehouse",
                    ),
                ),
                (
                    "origin_warehouse",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="outgoing_movements",
                        to="inventory.warehouse",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="inventory.product",
                    ),
                ),
                (
                    "responsible",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-occurred_at", "-sequence"],
                "indexes": [
                    models.Index(fields=["product", "-sequence"], name="movement_product_seq_idx"),
                    models.Index(fields=["type", "occurred_at"], name="movement_type_occurred_idx"),
                    models.Index(fields=["responsible", "occurred_at"], name="movement_responsible_idx"),
                ],
                "constraints": [
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
                ],
            },
        ),
    ]
