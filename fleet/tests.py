from datetime import date, timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import InactiveEntityError, InvalidStateError, ValidationFailedError
from core.models import AuditLog
from fleet.models import Vehicle, requires_maintenance
from fleet.serializers import VehicleSerializer
from fleet.services import assign_driver, available_vehicles, change_state, release_driver


def make_vehicle(plate="ABC123", **extra):
    defaults = {
        "brand": "Chevrolet",
        "model": "NHR",
        "year": 2021,
        "kind": Vehicle.Kind.CAMION,
        "load_capacity": Decimal("4500"),
    }
    return Vehicle.objects.create(plate=plate, **{**defaults, **extra})


class VehicleModelTests(TestCase):
    def test_plate_is_uppercased(self):
        vehicle = make_vehicle(plate="abc123")

        self.assertEqual(vehicle.plate, "ABC123")

    def test_requires_maintenance_within_a_week(self):
        today = date(2024, 5, 1)
        vehicle = make_vehicle(next_maintenance=today + timedelta(days=7))

        self.assertTrue(requires_maintenance(vehicle, today=today))
        vehicle.next_maintenance = today + timedelta(days=8)
        self.assertFalse(requires_maintenance(vehicle, today=today))
        vehicle.next_maintenance = None
        self.assertFalse(requires_maintenance(vehicle, today=today))

    def test_database_refuses_vehicle_on_route_without_driver(self):
        vehicle = make_vehicle()

        with self.assertRaises(IntegrityError), transaction.atomic():
            Vehicle.objects.filter(pk=vehicle.pk).update(state=Vehicle.State.EN_RUTA)


class VehicleServiceTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.driver = user_model.objects.create_user(username="fleet-driver", password="pass1234", role="conductor")
        self.operator = user_model.objects.create_user(username="fleet-operator", password="pass1234")
        self.vehicle = make_vehicle()

    def test_assign_driver_requires_available_vehicle_and_conductor(self):
        vehicle = assign_driver(self.vehicle.pk, self.driver.pk)
        self.assertEqual(vehicle.assigned_driver, self.driver)

        with self.assertRaises(ValidationFailedError):
            assign_driver(self.vehicle.pk, self.operator.pk)

        change_state(self.vehicle.pk, Vehicle.State.MANTENIMIENTO)
        with self.assertRaises(InvalidStateError):
            assign_driver(self.vehicle.pk, self.driver.pk)

    def test_assign_driver_rejects_inactive_vehicle(self):
        self.vehicle.is_active = False
        self.vehicle.save(update_fields=["is_active"])

        with self.assertRaises(InactiveEntityError):
            assign_driver(self.vehicle.pk, self.driver.pk)

    def test_change_state_to_route_needs_driver(self):
        with self.assertRaises(InvalidStateError):
            change_state(self.vehicle.pk, Vehicle.State.EN_RUTA)

        assign_driver(self.vehicle.pk, self.driver.pk)
        vehicle = change_state(self.vehicle.pk, Vehicle.State.EN_RUTA)

        self.assertEqual(vehicle.state, Vehicle.State.EN_RUTA)

    def test_change_state_rejects_unknown_state(self):
        with self.assertRaises(ValidationFailedError):
            change_state(self.vehicle.pk, "volando")

    def test_release_driver_returns_vehicle_to_available(self):
        assign_driver(self.vehicle.pk, self.driver.pk)
        change_state(self.vehicle.pk, Vehicle.State.EN_RUTA)

        vehicle = release_driver(self.vehicle.pk)

        self.assertIsNone(vehicle.assigned_driver)
        self.assertEqual(vehicle.state, Vehicle.State.DISPONIBLE)

    def test_edit_from_stale_instance_keeps_state_and_driver(self):
        stale = Vehicle.objects.get(pk=self.vehicle.pk)
        assign_driver(self.vehicle.pk, self.driver.pk)
        change_state(self.vehicle.pk, Vehicle.State.EN_RUTA)

        serializer = VehicleSerializer(stale, data={"mileage": 120500, "notes": "Cambio de llantas"}, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()

        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.mileage, 120500)
        self.assertEqual(self.vehicle.state, Vehicle.State.EN_RUTA)
        self.assertEqual(self.vehicle.assigned_driver, self.driver)

    def test_available_vehicles_excludes_busy_and_inactive(self):
        make_vehicle(plate="INACT01", is_active=False)
        busy = make_vehicle(plate="BUSY001")
        change_state(busy.pk, Vehicle.State.MANTENIMIENTO)

        self.assertEqual([vehicle.plate for vehicle in available_vehicles()], ["ABC123"])


class VehicleApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.coordinator = user_model.objects.create_user(username="fleet-coord", password="pass1234", role="coordinador")
        self.driver = user_model.objects.create_user(username="fleet-api-driver", password="pass1234", role="conductor")
        self.vehicle = make_vehicle()

    def test_coordinator_registers_vehicle(self):
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post(
            "/api/v1/vehicles/",
            {
                "plate": "XYZ789",
                "brand": "Renault",
                "model": "Kangoo",
                "year": 2022,
                "kind": "van",
                "load_capacity": "800.00",
                "state": "en_ruta",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["state"], "disponible")
        self.assertTrue(AuditLog.objects.filter(action="vehicle.create").exists())

    def test_invalid_plate_and_maintenance_dates_are_rejected(self):
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.post(
            "/api/v1/vehicles/",
            {
                "plate": "AB-1",
                "brand": "Renault",
                "model": "Kangoo",
                "year": 2022,
                "kind": "van",
                "load_capacity": "800.00",
                "last_maintenance": "2024-05-10",
                "next_maintenance": "2024-05-01",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("plate", response.json()["errors"])

    def test_driver_can_view_but_not_manage_fleet(self):
        self.client.force_authenticate(user=self.driver)

        listing = self.client.get("/api/v1/vehicles/")
        denied = self.client.post(f"/api/v1/vehicles/{self.vehicle.id}/change-state/", {"state": "mantenimiento"}, format="json")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual(denied.status_code, 403)

    def test_assign_driver_and_change_state_actions(self):
        self.client.force_authenticate(user=self.coordinator)

        assigned = self.client.post(
            f"/api/v1/vehicles/{self.vehicle.id}/assign-driver/",
            {"driver": str(self.driver.id)},
            format="json",
        )
        on_route = self.client.post(f"/api/v1/vehicles/{self.vehicle.id}/change-state/", {"state": "en_ruta"}, format="json")
        delete = self.client.delete(f"/api/v1/vehicles/{self.vehicle.id}/")

        self.assertEqual(assigned.status_code, 200)
        self.assertEqual(assigned.json()["assigned_driver"], str(self.driver.id))
        self.assertEqual(on_route.json()["state"], "en_ruta")
        self.assertEqual(delete.status_code, 409)
        self.assertTrue(AuditLog.objects.filter(action="vehicle.assign_driver", entity_id=self.vehicle.id).exists())

    def test_available_endpoint(self):
        self.client.force_authenticate(user=self.driver)

        response = self.client.get("/api/v1/vehicles/available/")

        self.assertEqual([item["plate"] for item in response.json()], ["ABC123"])
