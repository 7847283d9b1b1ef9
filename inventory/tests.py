import threading
import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    ConflictError,
    InactiveEntityError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from core.models import AuditLog
from inventory import services as inventory_services
from inventory.models import Movement, Product, Warehouse
from inventory.serializers import ProductSerializer
from inventory.services import (
    ensure_product_deletable,
    obtain_history,
    recent_movements,
    record_movement,
    resolve_line_items,
    summarize_by_type,
)


def make_catalog(user_model):
    operator = user_model.objects.create_user(username="operator", password="pass1234", role="operador")
    warehouse = Warehouse.objects.create(name="Bodega Central", address="Calle 1 # 2-3", city="Bogotá")
    other_warehouse = Warehouse.objects.create(name="Bodega Sur", address="Calle 50 # 10-20", city="Bogotá")
    product = Product.objects.create(code="prd-001", name="Caja de tornillos", price=Decimal("2500.00"), warehouse=warehouse)
    return operator, warehouse, other_warehouse, product


class RecordMovementTests(TestCase):
    def setUp(self):
        self.operator, self.warehouse, self.other_warehouse, self.product = make_catalog(get_user_model())

    def _stock_to(self, quantity):
        return record_movement(Movement.Type.ENTRADA, self.product.pk, quantity, self.operator.pk, Movement.Motive.COMPRA)

    def test_product_code_is_uppercased(self):
        self.assertEqual(self.product.code, "PRD-001")

    def test_outgoing_movement_decrements_stock_and_snapshots_balances(self):
        self._stock_to(50)

        movement = record_movement(Movement.Type.SALIDA, self.product.pk, 30, self.operator.pk, Movement.Motive.VENTA)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 20)
        self.assertEqual(movement.stock_before, 50)
        self.assertEqual(movement.stock_after, 20)
        self.assertEqual(movement.sequence, 2)
        self.assertEqual(self.product.version, 2)

    def test_overdraw_is_rejected_without_mutation(self):
        self._stock_to(20)

        with self.assertLogs("inventory.services", level="WARNING") as logs:
            with self.assertRaises(InsufficientStockError) as ctx:
                record_movement(Movement.Type.SALIDA, self.product.pk, 25, self.operator.pk, Movement.Motive.VENTA)

        self.assertEqual(ctx.exception.available, 20)
        self.assertEqual(ctx.exception.requested, 25)
        self.assertEqual(ctx.exception.shortfall, 5)
        self.assertTrue(any("movement_rejected_insufficient_stock" in entry for entry in logs.output))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 20)
        self.assertEqual(Movement.objects.filter(product=self.product).count(), 1)

    def test_transfer_to_same_warehouse_is_rejected_before_any_write(self):
        self._stock_to(10)

        with self.assertRaises(ValidationFailedError):
            record_movement(
                Movement.Type.TRANSFERENCIA,
                self.product.pk,
                5,
                self.operator.pk,
                Movement.Motive.TRANSFERENCIA_BODEGAS,
                origin_warehouse_id=self.warehouse.pk,
                destination_warehouse_id=self.warehouse.pk,
            )

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)
        self.assertEqual(self.product.version, 1)

    def test_transfer_requires_both_warehouses(self):
        self._stock_to(10)

        with self.assertRaises(ValidationFailedError) as ctx:
            record_movement(Movement.Type.TRANSFERENCIA, self.product.pk, 5, self.operator.pk, Movement.Motive.OTRO)

        self.assertIn("origin_warehouse", ctx.exception.details)
        self.assertIn("destination_warehouse", ctx.exception.details)

    def test_transfer_decrements_product_stock(self):
        self._stock_to(10)

        movement = record_movement(
            Movement.Type.TRANSFERENCIA,
            self.product.pk,
            4,
            self.operator.pk,
            Movement.Motive.TRANSFERENCIA_BODEGAS,
            origin_warehouse_id=self.warehouse.pk,
            destination_warehouse_id=self.other_warehouse.pk,
        )

        self.assertEqual(movement.stock_after, 6)
        self.assertEqual(movement.destination_warehouse, self.other_warehouse)

    def test_invalid_inputs_are_rejected(self):
        for kwargs in (
            {"movement_type": "robo"},
            {"motive": "capricho"},
            {"quantity": 0},
            {"quantity": -3},
            {"quantity": True},
            {"quantity": 2.5},
            {"notes": "x" * 501},
        ):
            arguments = {
                "movement_type": Movement.Type.ENTRADA,
                "product_id": self.product.pk,
                "quantity": 1,
                "responsible_id": self.operator.pk,
                "motive": Movement.Motive.COMPRA,
                **kwargs,
            }
            with self.subTest(kwargs=kwargs), self.assertRaises(ValidationFailedError):
                record_movement(**arguments)

        self.assertFalse(Movement.objects.exists())

    def test_unknown_and_inactive_references(self):
        with self.assertRaises(NotFoundError):
            record_movement(
                Movement.Type.ENTRADA,
                "00000000-0000-0000-0000-000000000000",
                1,
                self.operator.pk,
                Movement.Motive.COMPRA,
            )

        self.product.is_active = False
        self.product.save(update_fields=["is_active"])
        with self.assertRaises(InactiveEntityError):
            self._stock_to(1)

        self.operator.is_active = False
        self.operator.save(update_fields=["is_active"])
        with self.assertRaises(InactiveEntityError):
            self._stock_to(1)

    def test_stale_version_is_reported_as_conflict(self):
        self._stock_to(10)
        stale = Product.objects.get(pk=self.product.pk)
        stale.version -= 1

        with patch("inventory.services._lock_product", return_value=stale):
            with self.assertRaises(ConflictError):
                record_movement(Movement.Type.SALIDA, self.product.pk, 1, self.operator.pk, Movement.Motive.VENTA)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)
        self.assertEqual(Movement.objects.filter(product=self.product).count(), 1)

    def test_writers_holding_stale_reads_are_rejected_and_never_overdraw(self):
        self._stock_to(10)
        real_lock = inventory_services._lock_product
        # Four writers all read the row before any of them writes.
        snapshots = [Product.objects.get(pk=self.product.pk) for _ in range(4)]
        reads = []

        def lock_product(product_id):
            return reads.pop() if reads else real_lock(product_id)

        outcomes = []
        with patch("inventory.services._lock_product", side_effect=lock_product):
            for snapshot in snapshots:
                reads[:] = [snapshot]
                for _attempt in range(2):
                    try:
                        record_movement(Movement.Type.SALIDA, self.product.pk, 3, self.operator.pk, Movement.Motive.VENTA)
                        outcomes.append("ok")
                        break
                    except ConflictError:
                        outcomes.append("conflict")
                    except InsufficientStockError:
                        outcomes.append("insufficient")
                        break

        self.product.refresh_from_db()
        self.assertEqual(outcomes, ["ok", "conflict", "ok", "conflict", "ok", "conflict", "insufficient"])
        self.assertEqual(self.product.stock, 1)
        movements = list(Movement.objects.filter(product=self.product).order_by("sequence"))
        self.assertEqual([(m.stock_before, m.stock_after) for m in movements], [(0, 10), (10, 7), (7, 4), (4, 1)])
        self.assertEqual(self.product.version, movements[-1].sequence)

    def test_product_edit_from_stale_instance_keeps_ledger_fields(self):
        self._stock_to(50)
        stale = Product.objects.get(pk=self.product.pk)
        record_movement(Movement.Type.SALIDA, self.product.pk, 30, self.operator.pk, Movement.Motive.VENTA)

        serializer = ProductSerializer(stale, data={"name": "Tornillos x100"}, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()

        self.product.refresh_from_db()
        self.assertEqual(self.product.name, "Tornillos x100")
        self.assertEqual((self.product.stock, self.product.version), (20, 2))
        movement = record_movement(Movement.Type.SALIDA, self.product.pk, 1, self.operator.pk, Movement.Motive.VENTA)
        self.assertEqual((movement.stock_before, movement.stock_after, movement.sequence), (20, 19, 3))

    def test_sequential_outgoing_movements_never_overdraw(self):
        self._stock_to(10)
        accepted = rejected = 0
        for _ in range(15):
            try:
                record_movement(Movement.Type.SALIDA, self.product.pk, 1, self.operator.pk, Movement.Motive.VENTA)
                accepted += 1
            except InsufficientStockError:
                rejected += 1

        self.product.refresh_from_db()
        self.assertEqual((accepted, rejected), (10, 5))
        self.assertEqual(self.product.stock, 0)

    def test_ledger_replays_to_current_stock(self):
        self._stock_to(40)
        record_movement(Movement.Type.SALIDA, self.product.pk, 15, self.operator.pk, Movement.Motive.VENTA)
        self._stock_to(5)
        record_movement(Movement.Type.SALIDA, self.product.pk, 30, self.operator.pk, Movement.Motive.DANO)

        movements = list(Movement.objects.filter(product=self.product).order_by("sequence"))
        self.product.refresh_from_db()
        self.assertEqual([movement.sequence for movement in movements], [1, 2, 3, 4])
        for previous, current in zip(movements, movements[1:]):
            self.assertEqual(current.stock_before, previous.stock_after)
        self.assertEqual(sum(movement.stock_after - movement.stock_before for movement in movements), self.product.stock)
        self.assertEqual(self.product.stock, 0)

    def test_movements_are_append_only(self):
        movement = self._stock_to(5)

        movement.notes = "edited"
        with self.assertRaises(ValidationFailedError):
            movement.save()
        with self.assertRaises(ValidationFailedError):
            movement.delete()


class MovementQueryTests(TestCase):
    def setUp(self):
        self.operator, self.warehouse, _, self.product = make_catalog(get_user_model())
        record_movement(Movement.Type.ENTRADA, self.product.pk, 20, self.operator.pk, Movement.Motive.COMPRA)
        record_movement(Movement.Type.SALIDA, self.product.pk, 5, self.operator.pk, Movement.Motive.VENTA)
        record_movement(
            Movement.Type.ENTRADA,
            self.product.pk,
            3,
            self.operator.pk,
            Movement.Motive.DEVOLUCION,
            occurred_at=timezone.now() - timedelta(days=30),
        )

    def test_history_is_newest_ledger_position_first(self):
        history = list(obtain_history(self.product.pk))

        self.assertEqual([movement.sequence for movement in history], [3, 2, 1])

    def test_history_period_filter(self):
        today = timezone.localdate()

        history = list(obtain_history(self.product.pk, date_from=today - timedelta(days=1), date_to=today))

        self.assertEqual([movement.sequence for movement in history], [2, 1])

    def test_history_rejects_inverted_period_and_unknown_product(self):
        today = timezone.localdate()
        with self.assertRaises(ValidationFailedError):
            obtain_history(self.product.pk, date_from=today, date_to=today - timedelta(days=1))
        with self.assertRaises(NotFoundError):
            obtain_history("00000000-0000-0000-0000-000000000000")

    def test_summary_includes_every_type(self):
        summary = summarize_by_type()

        self.assertEqual(summary["entrada"], {"total_quantity": 23, "count": 2})
        self.assertEqual(summary["salida"], {"total_quantity": 5, "count": 1})
        self.assertEqual(summary["transferencia"], {"total_quantity": 0, "count": 0})

    def test_recent_movements_limit(self):
        self.assertEqual(len(recent_movements(2)), 2)
        with self.assertRaises(ValidationFailedError):
            recent_movements(0)
        with self.assertRaises(ValidationFailedError):
            recent_movements(101)

    def test_product_deletion_rules(self):
        with self.assertRaises(InvalidStateError):
            ensure_product_deletable(self.product)

        self.product.is_active = False
        with self.assertRaises(ConflictError):
            ensure_product_deletable(self.product)


class ResolveLineItemsTests(TestCase):
    def setUp(self):
        self.operator, _, _, self.product = make_catalog(get_user_model())
        record_movement(Movement.Type.ENTRADA, self.product.pk, 10, self.operator.pk, Movement.Motive.COMPRA)

    def test_resolves_products_and_notes(self):
        lines = resolve_line_items([{"product": self.product.pk, "quantity": 4, "note": " frágil "}], check_stock=True)

        self.assertEqual(lines, [(self.product, 4, "frágil")])

    def test_rejects_empty_duplicate_and_excess_lines(self):
        with self.assertRaises(ValidationFailedError):
            resolve_line_items([])
        with self.assertRaises(ValidationFailedError):
            resolve_line_items([{"product": self.product.pk, "quantity": 1}, {"product": self.product.pk, "quantity": 2}])
        with self.assertRaises(InsufficientStockError):
            resolve_line_items([{"product": self.product.pk, "quantity": 11}], check_stock=True)

        self.assertEqual(resolve_line_items([{"product": self.product.pk, "quantity": 11}])[0][1], 11)


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.operator, self.warehouse, _, self.product = make_catalog(self.user_model)
        self.admin = self.user_model.objects.create_user(username="inv-admin", password="pass1234", role="admin")
        self.coordinator = self.user_model.objects.create_user(username="inv-coord", password="pass1234", role="coordinador")
        self.driver = self.user_model.objects.create_user(username="inv-driver", password="pass1234", role="conductor")

    def test_operator_records_movement_with_audit_log(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/movements/",
            {"type": "entrada", "product": str(self.product.id), "quantity": 12, "motive": "compra"},
            format="json",
            HTTP_X_REQUEST_ID="req-mov-1",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual((payload["stock_before"], payload["stock_after"], payload["delta"]), (0, 12, 12))
        self.assertEqual(payload["responsible"], str(self.operator.id))
        self.assertTrue(AuditLog.objects.filter(action="movement.create", request_id="req-mov-1").exists())

    def test_insufficient_stock_uses_error_envelope(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/movements/",
            {"type": "salida", "product": str(self.product.id), "quantity": 3, "motive": "venta"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {
                "code": "insufficient_stock",
                "message": "Insufficient stock. Available: 0, requested: 3.",
                "errors": {"available": 0, "requested": 3, "shortfall": 3, "product_id": str(self.product.id)},
                "status": 409,
            },
        )

    def test_driver_cannot_record_movements(self):
        self.client.force_authenticate(user=self.driver)

        response = self.client.post(
            "/api/v1/movements/",
            {"type": "entrada", "product": str(self.product.id), "quantity": 1, "motive": "compra"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_stock_is_read_only_through_product_api(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/products/{self.product.id}/", {"stock": 999, "name": "Renombrado"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)
        self.assertEqual(self.product.name, "Renombrado")
        self.assertTrue(AuditLog.objects.filter(action="product.update", entity_id=self.product.id).exists())

    def test_admin_creates_product_and_operator_cannot(self):
        payload = {"code": "new-002", "name": "Guantes", "price": "1200.00", "warehouse": str(self.warehouse.id)}

        self.client.force_authenticate(user=self.operator)
        denied = self.client.post("/api/v1/products/", payload, format="json")
        self.client.force_authenticate(user=self.admin)
        created = self.client.post("/api/v1/products/", payload, format="json")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["code"], "NEW-002")
        self.assertEqual(created.json()["stock"], 0)

    def test_low_stock_and_history_endpoints(self):
        record_movement(Movement.Type.ENTRADA, self.product.pk, 4, self.operator.pk, Movement.Motive.COMPRA)
        self.client.force_authenticate(user=self.driver)

        low_stock = self.client.get("/api/v1/products/low-stock/")
        history = self.client.get(f"/api/v1/products/{self.product.id}/history/")

        self.assertEqual([item["code"] for item in low_stock.json()], ["PRD-001"])
        self.assertTrue(low_stock.json()[0]["is_low_stock"])
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()["count"], 1)

    def test_summary_is_restricted_to_reporting_roles(self):
        self.client.force_authenticate(user=self.operator)
        denied = self.client.get("/api/v1/movements/summary/")
        self.client.force_authenticate(user=self.coordinator)
        allowed = self.client.get("/api/v1/movements/summary/")
        by_user = self.client.get(f"/api/v1/movements/by-user/{self.operator.id}/")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(set(allowed.json()), {"entrada", "salida", "transferencia"})
        self.assertEqual(by_user.status_code, 200)

    def test_active_product_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/products/{self.product.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")

    def test_warehouse_with_products_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/warehouses/{self.warehouse.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertTrue(Warehouse.objects.filter(pk=self.warehouse.pk).exists())


@unittest.skipUnless(connection.vendor == "postgresql", "row locks are only enforced on PostgreSQL")
class ConcurrentMovementTests(TransactionTestCase):
    def setUp(self):
        self.operator, _, _, self.product = make_catalog(get_user_model())
        record_movement(Movement.Type.ENTRADA, self.product.pk, 10, self.operator.pk, Movement.Motive.COMPRA)

    def test_parallel_outgoing_movements_never_overdraw(self):
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def withdraw():
            barrier.wait()
            try:
                for _ in range(3):
                    try:
                        record_movement(Movement.Type.SALIDA, self.product.pk, 1, self.operator.pk, Movement.Motive.VENTA)
                        result = "ok"
                    except InsufficientStockError:
                        result = "insufficient"
                    with lock:
                        outcomes.append(result)
            finally:
                connection.close()

        threads = [threading.Thread(target=withdraw) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.product.refresh_from_db()
        self.assertEqual(outcomes.count("ok"), 10)
        self.assertEqual(outcomes.count("insufficient"), 14)
        self.assertEqual(self.product.stock, 0)
        self.assertEqual(Movement.objects.filter(product=self.product).count(), 11)
