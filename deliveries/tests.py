import random
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework.throttling import ScopedRateThrottle

from common.exceptions import (
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    TrackingNotActiveError,
    ValidationFailedError,
)
from core.models import AuditLog
from deliveries.locations import BOGOTA_AREA_LABELS, StaticLocationLookup, get_location_lookup
from deliveries.models import Delivery, DeliveryTrackingPoint, is_late, items_progress, tracking_progress
from deliveries.serializers import DeliverySerializer
from deliveries.services import (
    DELIVERY_TRANSITIONS,
    cancel_delivery,
    complete_delivery,
    create_delivery,
    create_delivery_from_route,
    delivery_history,
    ensure_delivery_deletable,
    mark_delayed,
    resume_delivery,
    simulate_step,
    start_tracking,
)
from fleet.models import Vehicle
from inventory.models import Product, Warehouse
from routes.models import Route, RouteItem

ORIGIN = {"name": "Bodega Central", "address": "Calle 13 # 68-45", "latitude": 4.6, "longitude": -74.1}
CLIENT = {
    "name": "Droguería La 45",
    "address": "Avenida Caracas # 45-10",
    "latitude": 4.7,
    "longitude": -74.0,
    "phone": "3109876543",
}


class FixedLookup:
    def random_label(self):
        return "Punto de control"


class DeliveryFixtureMixin:
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        self.coordinator = user_model.objects.create_user(username="dlv-coord", password="pass1234", role="coordinador")
        self.driver = user_model.objects.create_user(username="dlv-driver", password="pass1234", role="conductor")
        self.other_driver = user_model.objects.create_user(username="dlv-driver-2", password="pass1234", role="conductor")
        self.vehicle = Vehicle.objects.create(
            plate="ENT001",
            brand="Renault",
            model="Master",
            year=2023,
            kind=Vehicle.Kind.VAN,
            load_capacity=Decimal("1500"),
        )
        warehouse = Warehouse.objects.create(name="Bodega Entregas", address="Calle 2", city="Bogotá")
        self.gloves = Product.objects.create(code="GUAN-01", name="Guantes", price=Decimal("1200"), warehouse=warehouse)
        self.masks = Product.objects.create(code="TAPA-01", name="Tapabocas", price=Decimal("800"), warehouse=warehouse)
        self.scheduled_at = timezone.now() + timedelta(hours=2)

    def make_delivery(self, **overrides):
        arguments = {
            "driver_id": self.driver.pk,
            "vehicle_id": self.vehicle.pk,
            "client": CLIENT,
            "origin": ORIGIN,
            "items": [{"product": self.gloves.pk, "quantity": 20}, {"product": self.masks.pk, "quantity": 50}],
            "scheduled_at": self.scheduled_at,
            "created_by": self.coordinator,
        }
        arguments.update(overrides)
        return create_delivery(**arguments)

    def make_route(self, state=Route.State.PLANIFICADA, **extra):
        route = Route.objects.create(
            number=f"R-TEST-{Route.objects.count() + 1}",
            origin_name=ORIGIN["name"],
            origin_address=ORIGIN["address"],
            origin_latitude=ORIGIN["latitude"],
            origin_longitude=ORIGIN["longitude"],
            destination_name=CLIENT["name"],
            destination_address=CLIENT["address"],
            destination_latitude=CLIENT["latitude"],
            destination_longitude=CLIENT["longitude"],
            scheduled_at=self.scheduled_at,
            vehicle=self.vehicle,
            driver=self.driver,
            state=state,
            **extra,
        )
        RouteItem.objects.create(route=route, product=self.gloves, quantity_planned=12)
        return route


class DeliveryTransitionTableTests(TestCase):
    def test_table_is_closed_and_terminal_states_are_final(self):
        for state in DELIVERY_TRANSITIONS.states:
            self.assertTrue(DELIVERY_TRANSITIONS.targets(state) <= DELIVERY_TRANSITIONS.states)
        for state in Delivery.TERMINAL_STATES:
            self.assertTrue(DELIVERY_TRANSITIONS.is_terminal(state))
        self.assertTrue(DELIVERY_TRANSITIONS.can_transition(Delivery.State.RETRASADO, Delivery.State.EN_PROCESO))

    def test_pending_delivery_can_only_start_or_be_delayed(self):
        self.assertEqual(DELIVERY_TRANSITIONS.targets(Delivery.State.PENDIENTE), {"en_proceso", "retrasado"})
        self.assertFalse(DELIVERY_TRANSITIONS.can_transition(Delivery.State.PENDIENTE, Delivery.State.CANCELADO))
        self.assertFalse(DELIVERY_TRANSITIONS.can_transition(Delivery.State.PENDIENTE, Delivery.State.ENTREGADO))


class LocationLookupTests(TestCase):
    def test_static_lookup_is_deterministic_with_seeded_rng(self):
        first = StaticLocationLookup(rng=random.Random(3))
        second = StaticLocationLookup(rng=random.Random(3))

        labels = [first.random_label() for _ in range(5)]

        self.assertEqual(labels, [second.random_label() for _ in range(5)])
        self.assertTrue(set(labels) <= set(BOGOTA_AREA_LABELS))

    def test_empty_label_list_is_rejected(self):
        with self.assertRaises(ValueError):
            StaticLocationLookup(labels=())

    @override_settings(DELIVERY_LOCATION_LOOKUP="deliveries.tests.FixedLookup")
    def test_lookup_class_comes_from_settings(self):
        self.assertEqual(get_location_lookup().random_label(), "Punto de control")


class CreateDeliveryTests(DeliveryFixtureMixin, TestCase):
    def test_delivery_is_created_pending_with_haversine_distance(self):
        delivery = self.make_delivery()

        self.assertEqual(delivery.state, Delivery.State.PENDIENTE)
        self.assertTrue(delivery.number.startswith("ENT"))
        self.assertFalse(delivery.tracking_active)
        self.assertAlmostEqual(delivery.total_distance_km, 15.70, delta=0.05)
        self.assertEqual(delivery.client_phone, "3109876543")
        self.assertEqual(items_progress(delivery), 0)
        self.assertEqual(tracking_progress(delivery), 0)

    def test_explicit_distance_is_kept(self):
        delivery = self.make_delivery(total_distance_km=22.4)

        self.assertEqual(delivery.total_distance_km, 22.4)

    def test_invalid_input_is_rejected(self):
        cases = [
            {"client": {**CLIENT, "latitude": -91}},
            {"origin": {**ORIGIN, "address": " "}},
            {"items": []},
            {"scheduled_at": None},
            {"total_distance_km": -1},
            {"driver_id": self.coordinator.pk},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides), self.assertRaises(ValidationFailedError):
                self.make_delivery(**overrides)
        self.assertFalse(Delivery.objects.exists())

    def test_delivery_from_route_copies_destination_and_items(self):
        route = self.make_route()

        delivery = create_delivery_from_route(route.pk, created_by=self.coordinator)

        self.assertEqual(delivery.state, Delivery.State.PENDIENTE)
        self.assertEqual(delivery.route, route)
        self.assertEqual(delivery.client_name, CLIENT["name"])
        self.assertEqual(delivery.driver, self.driver)
        self.assertEqual([(item.product_id, item.quantity_programmed) for item in delivery.items.all()], [(self.gloves.pk, 12)])
        with self.assertRaises(ConflictError):
            create_delivery_from_route(route.pk, created_by=self.coordinator)

    def test_cancelled_route_cannot_produce_delivery(self):
        route = self.make_route(state=Route.State.CANCELADA, cancellation_reason="Sin pedido")

        with self.assertRaises(InvalidStateError):
            create_delivery_from_route(route.pk)


class TrackingSimulationTests(DeliveryFixtureMixin, TestCase):
    def test_start_tracking_places_delivery_at_origin(self):
        delivery = self.make_delivery()

        delivery = start_tracking(delivery.pk)

        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)
        self.assertTrue(delivery.tracking_active)
        self.assertIsNotNone(delivery.started_at)
        self.assertEqual((delivery.current_latitude, delivery.current_longitude), (ORIGIN["latitude"], ORIGIN["longitude"]))
        point = delivery.tracking_points.get()
        self.assertEqual((point.sequence, point.progress, point.speed), (1, 0, 0))

    def test_restarting_tracking_does_not_duplicate_origin_point(self):
        delivery = self.make_delivery()
        start_tracking(delivery.pk)

        start_tracking(delivery.pk)

        self.assertEqual(DeliveryTrackingPoint.objects.filter(delivery=delivery).count(), 1)

    def test_simulation_walks_to_client_and_delivers(self):
        delivery = start_tracking(self.make_delivery().pk)
        rng = random.Random(42)
        lookup = Mock(random_label=Mock(return_value="Calle 26, Salitre"))

        progresses = []
        for _ in range(25):
            delivery = simulate_step(delivery.pk, location_lookup=lookup, rng=rng)
            progresses.append(tracking_progress(delivery))
            if delivery.state == Delivery.State.ENTREGADO:
                break

        self.assertEqual(delivery.state, Delivery.State.ENTREGADO)
        self.assertFalse(delivery.tracking_active)
        self.assertIsNotNone(delivery.delivered_at)
        self.assertEqual(delivery.estimated_arrival_minutes, 0)
        self.assertEqual(progresses, sorted(progresses))
        self.assertEqual(progresses[-1], 100)
        self.assertTrue(all(4.99 <= later - earlier <= 15.01 for earlier, later in zip(progresses, progresses[1:-1])))
        self.assertAlmostEqual(delivery.current_latitude, CLIENT["latitude"])
        self.assertAlmostEqual(delivery.traveled_distance_km, delivery.total_distance_km, places=2)
        self.assertEqual(items_progress(delivery), 100)
        points = list(delivery.tracking_points.order_by("sequence"))
        self.assertEqual([point.sequence for point in points], list(range(1, len(points) + 1)))
        self.assertTrue(all(20 <= point.speed <= 80 for point in points[1:]))
        self.assertTrue(all(point.label == "Calle 26, Salitre" for point in points[1:]))
        with self.assertRaises(TrackingNotActiveError):
            simulate_step(delivery.pk, location_lookup=lookup, rng=rng)

    def test_single_step_interpolates_position(self):
        delivery = start_tracking(self.make_delivery().pk)

        delivery = simulate_step(delivery.pk, location_lookup=FixedLookup(), rng=random.Random(1))

        progress = tracking_progress(delivery)
        self.assertTrue(5 <= progress <= 15)
        expected_latitude = ORIGIN["latitude"] + (CLIENT["latitude"] - ORIGIN["latitude"]) * progress / 100
        self.assertAlmostEqual(delivery.current_latitude, expected_latitude)
        self.assertGreater(delivery.estimated_arrival_minutes, 0)
        self.assertEqual(delivery.tracking_points.order_by("-sequence").first().label, "Punto de control")

    def test_simulation_requires_active_tracking(self):
        delivery = self.make_delivery()

        with self.assertRaises(TrackingNotActiveError):
            simulate_step(delivery.pk, location_lookup=FixedLookup())

    def test_delay_pauses_and_resume_restores_tracking(self):
        delivery = start_tracking(self.make_delivery().pk)

        with self.assertRaises(ValidationFailedError):
            mark_delayed(delivery.pk, "")
        delivery = mark_delayed(delivery.pk, "Trancón en la Caracas")
        self.assertEqual(delivery.state, Delivery.State.RETRASADO)
        self.assertFalse(delivery.tracking_active)
        with self.assertRaises(TrackingNotActiveError):
            simulate_step(delivery.pk, location_lookup=FixedLookup())
        with self.assertRaises(InvalidStateError):
            start_tracking(delivery.pk)

        delivery = resume_delivery(delivery.pk)

        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)
        self.assertTrue(delivery.tracking_active)
        with self.assertRaises(InvalidStateError):
            resume_delivery(delivery.pk)

    def test_pending_delay_resumes_without_tracking(self):
        delivery = mark_delayed(self.make_delivery().pk, "Vehículo en taller")

        delivery = resume_delivery(delivery.pk)

        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)
        self.assertFalse(delivery.tracking_active)


class CompleteAndCancelTests(DeliveryFixtureMixin, TestCase):
    def test_complete_records_proof_and_partial_quantities(self):
        delivery = start_tracking(self.make_delivery().pk)

        delivery = complete_delivery(
            delivery.pk,
            signature="data:image/png;base64,AAAA",
            rating=4,
            items_delivered=[{"product": self.masks.pk, "quantity_delivered": 40}],
        )

        self.assertEqual(delivery.state, Delivery.State.ENTREGADO)
        self.assertEqual(delivery.rating, 4)
        self.assertEqual(delivery.signature, "data:image/png;base64,AAAA")
        self.assertEqual(tracking_progress(delivery), 100)
        delivered = {item.product_id: item.quantity_delivered for item in delivery.items.all()}
        self.assertEqual(delivered, {self.gloves.pk: 20, self.masks.pk: 40})
        self.assertEqual(items_progress(delivery), 86)

    def test_complete_validation(self):
        delivery = start_tracking(self.make_delivery().pk)

        with self.assertRaises(ValidationFailedError):
            complete_delivery(delivery.pk, rating=6)
        with self.assertRaises(ValidationFailedError):
            complete_delivery(delivery.pk, items_delivered=[{"product": self.masks.pk, "quantity_delivered": 51}])

        delivery.refresh_from_db()
        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)

    def test_pending_delivery_cannot_be_completed_directly(self):
        delivery = self.make_delivery()

        with self.assertRaises(InvalidTransitionError):
            complete_delivery(delivery.pk)

        self.assertFalse(DeliveryTrackingPoint.objects.filter(delivery=delivery).exists())

    def test_cancel_requires_reason_and_is_final(self):
        delivery = start_tracking(self.make_delivery().pk)

        with self.assertRaises(ValidationFailedError):
            cancel_delivery(delivery.pk, None)
        delivery = cancel_delivery(delivery.pk, "Cliente no recibe")

        self.assertEqual(delivery.state, Delivery.State.CANCELADO)
        self.assertFalse(delivery.tracking_active)
        self.assertFalse(is_late(delivery, now=self.scheduled_at + timedelta(days=1)))
        with self.assertRaises(InvalidTransitionError):
            complete_delivery(delivery.pk)

    def test_pending_delivery_cannot_be_cancelled(self):
        delivery = self.make_delivery()

        with self.assertRaises(InvalidTransitionError):
            cancel_delivery(delivery.pk, "Cliente no recibe")

        delivery.refresh_from_db()
        self.assertEqual(delivery.state, Delivery.State.PENDIENTE)
        self.assertEqual(delivery.cancellation_reason, "")

    def test_in_progress_delivery_cannot_be_deleted(self):
        delivery = start_tracking(self.make_delivery().pk)

        with self.assertRaises(InvalidStateError):
            ensure_delivery_deletable(delivery)

    def test_history_lists_finished_deliveries(self):
        finished = complete_delivery(start_tracking(self.make_delivery().pk).pk)
        self.make_delivery()
        other = cancel_delivery(start_tracking(self.make_delivery(driver_id=self.other_driver.pk).pk).pk, "Dirección errada")

        self.assertEqual(list(delivery_history(driver_id=self.driver.pk)), [finished])
        self.assertEqual({delivery.pk for delivery in delivery_history()}, {finished.pk, other.pk})


class DeliveryApiTests(DeliveryFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_coordinator_creates_delivery(self):
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post(
            "/api/v1/deliveries/",
            {
                "driver": str(self.driver.id),
                "vehicle": str(self.vehicle.id),
                "client": CLIENT,
                "origin": ORIGIN,
                "items": [{"product": str(self.gloves.id), "quantity": 5, "note": "Caja sellada"}],
                "scheduled_at": self.scheduled_at.isoformat(),
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["state"], "pendiente")
        self.assertEqual(payload["items"][0]["note"], "Caja sellada")
        self.assertTrue(AuditLog.objects.filter(action="delivery.create", entity_id=payload["id"]).exists())

    def test_from_route_endpoint(self):
        route = self.make_route()
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post(f"/api/v1/deliveries/from-route/{route.id}/")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["route"], str(route.id))

    def test_assigned_driver_runs_the_tracking_flow(self):
        delivery = self.make_delivery()
        self.client.force_authenticate(user=self.driver)

        started = self.client.post(f"/api/v1/deliveries/{delivery.id}/start-tracking/")
        stepped = self.client.post(f"/api/v1/deliveries/{delivery.id}/simulate-step/")
        completed = self.client.post(
            f"/api/v1/deliveries/{delivery.id}/complete/",
            {"rating": 5, "signature": "firma"},
            format="json",
        )
        tracking = self.client.get(f"/api/v1/deliveries/{delivery.id}/tracking/")

        self.assertEqual(started.status_code, 200)
        self.assertTrue(started.json()["tracking_active"])
        self.assertEqual(stepped.status_code, 200)
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()["state"], "entregado")
        self.assertEqual(tracking.json()[-1]["progress"], 100)
        self.assertTrue(AuditLog.objects.filter(action="delivery.complete", entity_id=delivery.id).exists())

    def test_other_driver_cannot_operate_delivery(self):
        delivery = self.make_delivery()
        self.client.force_authenticate(user=self.other_driver)

        response = self.client.post(f"/api/v1/deliveries/{delivery.id}/start-tracking/")
        detail = self.client.get(f"/api/v1/deliveries/{delivery.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(detail.status_code, 200)

    def test_simulation_without_tracking_uses_error_envelope(self):
        delivery = self.make_delivery()
        self.client.force_authenticate(user=self.driver)

        response = self.client.post(f"/api/v1/deliveries/{delivery.id}/simulate-step/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "tracking_not_active")

    def test_simulation_steps_have_their_own_throttle(self):
        delivery = start_tracking(self.make_delivery().pk)
        self.client.force_authenticate(user=self.driver)
        cache.clear()

        with patch.dict(ScopedRateThrottle.THROTTLE_RATES, {"tracking_simulation": "2/minute"}):
            statuses = [
                self.client.post(f"/api/v1/deliveries/{delivery.id}/simulate-step/").status_code for _ in range(3)
            ]
            detail = self.client.get(f"/api/v1/deliveries/{delivery.id}/")

        self.assertEqual(statuses, [200, 200, 429])
        self.assertEqual(detail.status_code, 200)

    def test_note_edit_from_stale_instance_keeps_lifecycle_fields(self):
        delivery = self.make_delivery()
        stale = Delivery.objects.get(pk=delivery.pk)
        start_tracking(delivery.pk)

        serializer = DeliverySerializer(stale, data={"notes": "Tocar timbre"}, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()

        delivery.refresh_from_db()
        self.assertEqual(delivery.notes, "Tocar timbre")
        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)
        self.assertTrue(delivery.tracking_active)
        self.assertIsNotNone(delivery.started_at)

    def test_patch_only_changes_editable_fields(self):
        delivery = start_tracking(self.make_delivery().pk)
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.patch(
            f"/api/v1/deliveries/{delivery.id}/",
            {"notes": "Portería", "state": "cancelado", "tracking_active": False},
            format="json",
        )

        delivery.refresh_from_db()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(delivery.notes, "Portería")
        self.assertEqual(delivery.state, Delivery.State.EN_PROCESO)
        self.assertTrue(delivery.tracking_active)
        self.assertTrue(AuditLog.objects.filter(action="delivery.update", entity_id=delivery.id).exists())

    def test_delay_resume_and_cancel_endpoints(self):
        delivery = self.make_delivery()
        self.client.force_authenticate(user=self.driver)

        missing_reason = self.client.post(f"/api/v1/deliveries/{delivery.id}/delay/", {}, format="json")
        delayed = self.client.post(f"/api/v1/deliveries/{delivery.id}/delay/", {"reason": "Lluvia"}, format="json")
        resumed = self.client.post(f"/api/v1/deliveries/{delivery.id}/resume/")
        driver_cancel = self.client.post(f"/api/v1/deliveries/{delivery.id}/cancel/", {"reason": "x"}, format="json")
        self.client.force_authenticate(user=self.coordinator)
        cancelled = self.client.post(f"/api/v1/deliveries/{delivery.id}/cancel/", {"reason": "Pedido anulado"}, format="json")

        self.assertEqual(missing_reason.status_code, 400)
        self.assertEqual(delayed.json()["state"], "retrasado")
        self.assertEqual(resumed.json()["state"], "en_proceso")
        self.assertEqual(driver_cancel.status_code, 403)
        self.assertEqual(cancelled.json()["state"], "cancelado")

    def test_history_endpoint_is_paginated(self):
        complete_delivery(start_tracking(self.make_delivery().pk).pk)
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.get("/api/v1/deliveries/history/", {"driver": str(self.driver.id)})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
