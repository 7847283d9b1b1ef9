from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from fleet.models import Vehicle
from inventory.models import Movement, Product, Warehouse
from inventory.services import record_movement


class Command(BaseCommand):
    help = "Seed demo users, warehouses, products and vehicles for local development."

    def _user(self, username, role, password, **extra):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={"email": f"{username}@example.com", "role": role, "is_active": True, **extra},
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        admin_user = self._user("admin", User.Role.ADMIN, "admin1234", is_staff=True, is_superuser=True)
        coordinator = self._user("coordinador", User.Role.COORDINADOR, "coordinador1234")
        driver = self._user("conductor", User.Role.CONDUCTOR, "conductor1234")
        self._user("operador", User.Role.OPERADOR, "operador1234")

        main_warehouse, _ = Warehouse.objects.get_or_create(
            name="Bodega Principal",
            defaults={"address": "Calle 13 # 68-45", "city": "Bogotá", "state": "Cundinamarca", "manager": coordinator},
        )
        north_warehouse, _ = Warehouse.objects.get_or_create(
            name="Bodega Norte",
            defaults={"address": "Autopista Norte # 170-20", "city": "Bogotá", "state": "Cundinamarca"},
        )

        catalog = [
            ("ELEC-001", "Televisor 50 pulgadas", Product.Category.ELECTRONICA, Decimal("1899000.00"), 40),
            ("ALIM-001", "Caja de café 500g", Product.Category.ALIMENTOS, Decimal("18500.00"), 300),
            ("FARM-001", "Kit de primeros auxilios", Product.Category.FARMACEUTICO, Decimal("45000.00"), 8),
        ]
        for code, name, category, price, initial_stock in catalog:
            product, created = Product.objects.get_or_create(
                code=code,
                defaults={"name": name, "category": category, "price": price, "warehouse": main_warehouse},
            )
            if created:
                record_movement(
                    Movement.Type.ENTRADA,
                    product.pk,
                    initial_stock,
                    admin_user.pk,
                    Movement.Motive.COMPRA,
                    reference_document="SEED-0001",
                )

        Vehicle.objects.get_or_create(
            plate="ABC123",
            defaults={
                "brand": "Chevrolet",
                "model": "NHR",
                "year": 2021,
                "kind": Vehicle.Kind.CAMION,
                "load_capacity": Decimal("4500"),
                "assigned_driver": driver,
            },
        )
        Vehicle.objects.get_or_create(
            plate="XYZ789",
            defaults={"brand": "Renault", "model": "Kangoo", "year": 2022, "kind": Vehicle.Kind.VAN, "load_capacity": Decimal("800")},
        )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: admin/admin1234, coordinador/coordinador1234, conductor/conductor1234, operador/operador1234"
        )
        self.stdout.write(f"Warehouses: {main_warehouse.name}, {north_warehouse.name}")
