from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    ConflictError,
    InsufficientStockError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationFailedError,
)
from core.models import AuditLog, SerialCounter
from deliveries.models import Delivery
from fleet.models import Vehicle
from fleet.services import change_state
from inventory.models import Movement, Product, Warehouse
from inventory.services import record_movement
from routes.models import Route, RouteTrackingPoint, actual_duration_hours, delivery_progress, is_late
from routes.serializers import RouteSerializer
from routes.services import (
    ROUTE_TRANSITIONS,
    active_routes_for_driver,
    create_route,
    ensure_route_deletable,
    register_delivered_quantities,
    register_route_tracking,
    route_history,
    start_route,
    transition_route,
)

ORIGIN = {"name": "Bodega Central", "address": "Calle 13 # 68-45", "latitude": 4.6425, "longitude": -74.1128}
DESTINATION = {
    "name": "Tienda Chapinero",
    "address": "Carrera 13 # 63-39",
    "latitude": 4.6486,
    "longitude": -74.0628,
    "contact_name": "Ana Pérez",
    "contact_phone": "3001234567",
}


class RouteFixtureMixin:
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        self.coordinator = user_model.objects.create_user(username="route-coord", password="pass1234", role="coordinador")
        self.driver = user_model.objects.create_user(username="route-driver", password="pass1234", role="conductor")
        self.other_driver = user_model.objects.create_user(username="route-driver-2", password="pass1234", role="conductor")
        self.vehicle = Vehicle.objects.create(
            plate="RUT001",
            brand="Hino",
            model="300",
            year=2020,
            kind=Vehicle.Kind.CAMION,
            load_capacity=Decimal("3000"),
        )
        warehouse = Warehouse.objects.create(name="Bodega Rutas", address="Calle 1", city="Bogotá")
        self.coffee = Product.objects.create(code="CAFE-01", name="Café", price=Decimal("18500"), warehouse=warehouse)
        self.sugar = Product.objects.create(code="AZUC-01", name="Azúcar", price=Decimal("4200"), warehouse=warehouse)
        for product in (self.coffee, self.sugar):
            record_movement(Movement.Type.ENTRADA, product.pk, 100, self.coordinator.pk, Movement.Motive.COMPRA)
        self.tomorrow = (timezone.localtime() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)

    def make_route(self, **overrides):
        arguments = {
            "origin": ORIGIN,
            "destination": DESTINATION,
            "scheduled_at": self.tomorrow,
            "vehicle_id": self.vehicle.pk,
            "driver_id": self.driver.pk,
            "items": [{"product": self.coffee.pk, "quantity": 10}, {"product": self.sugar.pk, "quantity": 5}],
            "created_by": self.coordinator,
        }
        arguments.update(overrides)
        return create_route(
            arguments.pop("origin"),
            arguments.pop("destination"),
            arguments.pop("scheduled_at"),
            arguments.pop("vehicle_id"),
            arguments.pop("driver_id"),
            arguments.pop("items"),
            **arguments,
        )


class RouteTransitionTableTests(TestCase):
    def test_table_is_closed_and_terminal_states_are_final(self):
        for state in ROUTE_TRANSITIONS.states:
            self.assertTrue(ROUTE_TRANSITIONS.targets(state) <= ROUTE_TRANSITIONS.states)
        self.assertTrue(ROUTE_TRANSITIONS.is_terminal(Route.State.COMPLETADA))
        self.assertTrue(ROUTE_TRANSITIONS.is_terminal(Route.State.CANCELADA))
        self.assertFalse(ROUTE_TRANSITIONS.can_transition(Route.State.PLANIFICADA, Route.State.COMPLETADA))


class CreateRouteTests(RouteFixtureMixin, TestCase):
    def test_route_is_created_planned_with_items(self):
        route = self.make_route(priority=Route.Priority.ALTA, distance_km=Decimal("12.5"))

        self.assertEqual(route.state, Route.State.PLANIFICADA)
        self.assertEqual(route.priority, Route.Priority.ALTA)
        self.assertTrue(route.number.startswith("R"))
        self.assertEqual(route.destination_contact_name, "Ana Pérez")
        self.assertEqual(
            sorted((item.product.code, item.quantity_planned) for item in route.items.all()),
            [("AZUC-01", 5), ("CAFE-01", 10)],
        )
        self.assertEqual(delivery_progress(route), 0)

    def test_route_numbers_are_sequential(self):
        first = self.make_route()
        second = self.make_route(driver_id=self.other_driver.pk)

        self.assertEqual(int(second.number[-4:]), int(first.number[-4:]) + 1)

    def test_route_numbers_continue_from_the_prefix_counter(self):
        first = self.make_route()
        prefix = first.number[:-4]
        SerialCounter.objects.filter(prefix=prefix).update(last_value=41)

        second = self.make_route(driver_id=self.other_driver.pk)

        self.assertEqual(second.number, f"{prefix}0042")

    def test_new_prefix_counter_starts_after_stored_numbers(self):
        first = self.make_route()
        SerialCounter.objects.all().delete()

        second = self.make_route(driver_id=self.other_driver.pk)

        self.assertEqual(int(second.number[-4:]), int(first.number[-4:]) + 1)

    def test_route_creation_checks_stock_without_reserving(self):
        with self.assertRaises(InsufficientStockError):
            self.make_route(items=[{"product": self.coffee.pk, "quantity": 101}])

        self.make_route()
        self.coffee.refresh_from_db()
        self.assertEqual(self.coffee.stock, 100)

    def test_invalid_input_is_rejected(self):
        yesterday = timezone.now() - timedelta(days=1)
        cases = [
            {"scheduled_at": yesterday},
            {"scheduled_at": "mañana"},
            {"origin": {**ORIGIN, "latitude": 91}},
            {"destination": {**DESTINATION, "name": ""}},
            {"priority": "inmediata"},
            {"items": []},
            {"driver_id": self.coordinator.pk},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides), self.assertRaises(ValidationFailedError):
                self.make_route(**overrides)
        self.assertFalse(Route.objects.exists())

    def test_unavailable_vehicle_is_rejected(self):
        change_state(self.vehicle.pk, Vehicle.State.MANTENIMIENTO)

        with self.assertRaises(InvalidStateError):
            self.make_route()

    def test_driver_cannot_hold_two_active_routes_on_one_day(self):
        self.make_route()

        with self.assertRaises(ConflictError):
            self.make_route(scheduled_at=self.tomorrow + timedelta(minutes=30))

        self.make_route(scheduled_at=self.tomorrow + timedelta(days=1))


class RouteLifecycleTests(RouteFixtureMixin, TestCase):
    def test_starting_route_puts_vehicle_on_route(self):
        route = self.make_route()

        route = start_route(route.pk)

        self.vehicle.refresh_from_db()
        self.assertEqual(route.state, Route.State.EN_TRANSITO)
        self.assertIsNotNone(route.started_at)
        self.assertEqual(self.vehicle.state, Vehicle.State.EN_RUTA)
        self.assertEqual(self.vehicle.assigned_driver, self.driver)

    def test_starting_route_hands_vehicle_to_route_driver(self):
        self.vehicle.assigned_driver = self.other_driver
        self.vehicle.save(update_fields=["assigned_driver"])
        route = self.make_route()

        start_route(route.pk)

        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.state, Vehicle.State.EN_RUTA)
        self.assertEqual(self.vehicle.assigned_driver, self.driver)

    def test_note_edit_from_stale_instance_keeps_route_in_transit(self):
        route = self.make_route()
        stale = Route.objects.get(pk=route.pk)
        start_route(route.pk)

        serializer = RouteSerializer(stale, data={"notes": "Entrar por portería"}, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()

        route.refresh_from_db()
        self.vehicle.refresh_from_db()
        self.assertEqual(route.notes, "Entrar por portería")
        self.assertEqual(route.state, Route.State.EN_TRANSITO)
        self.assertIsNotNone(route.started_at)
        self.assertEqual(self.vehicle.state, Vehicle.State.EN_RUTA)

    def test_completing_route_frees_vehicle_and_seeds_delivered_record(self):
        route = self.make_route()
        start_route(route.pk)

        route = transition_route(route.pk, Route.State.COMPLETADA)

        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.state, Vehicle.State.DISPONIBLE)
        self.assertIsNotNone(route.finished_at)
        self.assertIsNotNone(actual_duration_hours(route))
        self.assertEqual(delivery_progress(route), 100)
        delivery = Delivery.objects.get(route=route)
        self.assertEqual(delivery.state, Delivery.State.ENTREGADO)
        self.assertEqual(delivery.traveled_distance_km, delivery.total_distance_km)
        self.assertEqual(
            sorted((item.product_id, item.quantity_programmed, item.quantity_delivered) for item in delivery.items.all()),
            sorted((item.product_id, item.quantity_planned, item.quantity_planned) for item in route.items.all()),
        )

    def test_invalid_transitions_are_rejected(self):
        route = self.make_route()

        with self.assertRaises(InvalidTransitionError):
            transition_route(route.pk, Route.State.COMPLETADA)
        with self.assertRaises(ValidationFailedError):
            transition_route(route.pk, "perdida")

        route.refresh_from_db()
        self.assertEqual(route.state, Route.State.PLANIFICADA)

    def test_cancellation_requires_reason(self):
        route = self.make_route()

        with self.assertRaises(ValidationFailedError):
            transition_route(route.pk, Route.State.CANCELADA, reason="  ")

        route = transition_route(route.pk, Route.State.CANCELADA, reason="Cliente cerrado")
        self.assertEqual(route.cancellation_reason, "Cliente cerrado")
        with self.assertRaises(InvalidTransitionError):
            start_route(route.pk)

    def test_cancelling_route_in_transit_releases_vehicle(self):
        route = self.make_route()
        start_route(route.pk)

        transition_route(route.pk, Route.State.CANCELADA, reason="Vía bloqueada")

        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.state, Vehicle.State.DISPONIBLE)
        self.assertFalse(Delivery.objects.exists())

    def test_start_fails_when_vehicle_became_unavailable(self):
        route = self.make_route()
        change_state(self.vehicle.pk, Vehicle.State.MANTENIMIENTO)

        with self.assertRaises(InvalidStateError):
            start_route(route.pk)

        route.refresh_from_db()
        self.assertEqual(route.state, Route.State.PLANIFICADA)

    def test_tracking_is_only_registered_in_transit(self):
        route = self.make_route()
        with self.assertRaises(InvalidStateError):
            register_route_tracking(route.pk, 4.64, -74.1)

        start_route(route.pk)
        first = register_route_tracking(route.pk, 4.64, -74.1, speed=35, note="Salida de bodega")
        second = register_route_tracking(route.pk, 4.645, -74.08)

        self.assertEqual((first.sequence, second.sequence), (1, 2))
        self.assertEqual(second.speed, 0)
        with self.assertRaises(ValidationFailedError):
            register_route_tracking(route.pk, 4.64, 181)
        with self.assertRaises(ValidationFailedError):
            register_route_tracking(route.pk, 4.64, -74.1, speed=-5)
        with self.assertRaises(ValidationFailedError):
            first.delete()
        self.assertEqual(RouteTrackingPoint.objects.filter(route=route).count(), 2)

    def test_partial_then_full_delivery_completes_route(self):
        route = self.make_route()
        start_route(route.pk)

        route = register_delivered_quantities(route.pk, [{"product": self.coffee.pk, "quantity_delivered": 10}])
        self.assertEqual(route.state, Route.State.EN_TRANSITO)
        self.assertEqual(delivery_progress(route), 67)

        with self.assertRaises(ValidationFailedError):
            register_delivered_quantities(route.pk, [{"product": self.sugar.pk, "quantity_delivered": 6}])

        route = register_delivered_quantities(route.pk, [{"product": self.sugar.pk, "quantity_delivered": 5}])
        self.assertEqual(route.state, Route.State.COMPLETADA)
        self.assertTrue(Delivery.objects.filter(route=route, state=Delivery.State.ENTREGADO).exists())

    def test_route_in_transit_cannot_be_deleted(self):
        route = self.make_route()
        start_route(route.pk)
        route.refresh_from_db()

        with self.assertRaises(InvalidStateError):
            ensure_route_deletable(route)

    def test_is_late_only_for_open_routes(self):
        route = self.make_route()
        later = self.tomorrow + timedelta(hours=1)

        self.assertTrue(is_late(route, now=later))
        self.assertFalse(is_late(route, now=self.tomorrow - timedelta(hours=1)))


class RouteQueryTests(RouteFixtureMixin, TestCase):
    def test_active_routes_and_history(self):
        planned = self.make_route()
        completed = self.make_route(scheduled_at=self.tomorrow + timedelta(days=1))
        cancelled = self.make_route(scheduled_at=self.tomorrow + timedelta(days=2))
        start_route(completed.pk)
        transition_route(completed.pk, Route.State.COMPLETADA)
        transition_route(cancelled.pk, Route.State.CANCELADA, reason="Sin pedido")

        active = list(active_routes_for_driver(self.driver.pk))
        history, counts = route_history(driver_id=self.driver.pk)

        self.assertEqual(active, [planned])
        self.assertEqual({route.pk for route in history}, {completed.pk, cancelled.pk})
        self.assertEqual(counts, {"completed": 1, "cancelled": 1})


class RouteApiTests(RouteFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def _create_payload(self):
        return {
            "origin": ORIGIN,
            "destination": DESTINATION,
            "scheduled_at": self.tomorrow.isoformat(),
            "vehicle": str(self.vehicle.id),
            "driver": str(self.driver.id),
            "items": [{"product": str(self.coffee.id), "quantity": 3}],
            "priority": "urgente",
        }

    def test_coordinator_creates_route_with_audit_log(self):
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post("/api/v1/routes/", self._create_payload(), format="json")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["state"], "planificada")
        self.assertEqual(payload["priority"], "urgente")
        self.assertEqual(payload["vehicle_plate"], "RUT001")
        self.assertEqual(len(payload["items"]), 1)
        self.assertTrue(AuditLog.objects.filter(action="route.create", entity_id=payload["id"]).exists())

    def test_driver_cannot_create_routes(self):
        self.client.force_authenticate(user=self.driver)

        response = self.client.post("/api/v1/routes/", self._create_payload(), format="json")

        self.assertEqual(response.status_code, 403)

    def test_assigned_driver_starts_route_and_other_driver_cannot(self):
        route = self.make_route()

        self.client.force_authenticate(user=self.other_driver)
        denied = self.client.post(f"/api/v1/routes/{route.id}/start/")
        self.client.force_authenticate(user=self.driver)
        started = self.client.post(f"/api/v1/routes/{route.id}/start/")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.json()["state"], "en_transito")

    def test_driver_cannot_cancel_but_coordinator_can(self):
        route = self.make_route()

        self.client.force_authenticate(user=self.driver)
        denied = self.client.post(
            f"/api/v1/routes/{route.id}/transition/",
            {"state": "cancelada", "reason": "No puedo"},
            format="json",
        )
        self.client.force_authenticate(user=self.coordinator)
        cancelled = self.client.post(
            f"/api/v1/routes/{route.id}/transition/",
            {"state": "cancelada", "reason": "Cliente cerrado"},
            format="json",
        )

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["cancellation_reason"], "Cliente cerrado")

    def test_invalid_transition_uses_error_envelope(self):
        route = self.make_route()
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post(f"/api/v1/routes/{route.id}/transition/", {"state": "completada"}, format="json")

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "invalid_transition")
        self.assertEqual(body["errors"]["allowed"], ["cancelada", "en_transito"])

    def test_tracking_endpoints(self):
        route = self.make_route()
        start_route(route.pk)
        self.client.force_authenticate(user=self.driver)

        created = self.client.post(
            f"/api/v1/routes/{route.id}/tracking/",
            {"latitude": 4.645, "longitude": -74.09, "speed": 42.5},
            format="json",
        )
        listed = self.client.get(f"/api/v1/routes/{route.id}/tracking/")

        self.assertEqual(created.status_code, 201)
        self.assertEqual([point["sequence"] for point in listed.json()], [1])

    def test_patch_only_touches_editable_fields(self):
        route = self.make_route()
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.patch(
            f"/api/v1/routes/{route.id}/",
            {"notes": "Entrar por portería 2", "state": "completada"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        route.refresh_from_db()
        self.assertEqual(route.notes, "Entrar por portería 2")
        self.assertEqual(route.state, Route.State.PLANIFICADA)

    def test_history_includes_counts(self):
        route = self.make_route()
        transition_route(route.pk, Route.State.CANCELADA, reason="Sin pedido")
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.get("/api/v1/routes/history/", {"driver": str(self.driver.id)})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["cancelled"], 1)

    def test_active_defaults_to_current_driver(self):
        route = self.make_route()
        self.client.force_authenticate(user=self.driver)

        response = self.client.get("/api/v1/routes/active/")

        self.assertEqual([item["id"] for item in response.json()], [str(route.id)])
