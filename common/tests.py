import logging
from types import SimpleNamespace

from django.test import SimpleTestCase

from common.exceptions import (
    ConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
    build_error_envelope,
)
from common.geo import haversine_km, interpolate, validate_coordinates, validate_place, validate_speed
from common.logging import JsonFormatter
from common.state_machine import TransitionTable


class TransitionTableTests(SimpleTestCase):
    def setUp(self):
        self.table = TransitionTable(
            "door",
            {"closed": ["open", "locked"], "open": ["closed"], "locked": ["closed"], "broken": []},
        )
        self.calls = []

    def test_undeclared_targets_are_rejected(self):
        with self.assertRaises(ValueError):
            TransitionTable("door", {"closed": ["open"]})

    def test_apply_runs_generic_then_edge_hooks_before_writing_state(self):
        @self.table.on("open")
        def any_open(door, *, source, **context):
            self.calls.append(("any", source, door.state, context["actor"]))

        @self.table.on("open", source="closed")
        def closed_to_open(door, *, source, **context):
            self.calls.append(("edge", source, door.state, context["actor"]))

        door = SimpleNamespace(pk=1, state="closed")
        previous = self.table.apply(door, "open", actor="ana")

        self.assertEqual(previous, "closed")
        self.assertEqual(door.state, "open")
        self.assertEqual(self.calls, [("any", "closed", "closed", "ana"), ("edge", "closed", "closed", "ana")])

    def test_failing_hook_leaves_state_untouched(self):
        @self.table.on("locked")
        def refuse(door, **context):
            raise ConflictError("Key missing.")

        door = SimpleNamespace(pk=1, state="closed")
        with self.assertRaises(ConflictError):
            self.table.apply(door, "locked")

        self.assertEqual(door.state, "closed")

    def test_invalid_and_unknown_targets(self):
        door = SimpleNamespace(pk=1, state="open")

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.table.apply(door, "locked")
        with self.assertRaises(ValidationFailedError):
            self.table.apply(door, "flying")

        self.assertEqual(ctx.exception.details["allowed"], ["closed"])
        self.assertTrue(self.table.is_terminal("broken"))

    def test_transition_is_logged(self):
        door = SimpleNamespace(pk=7, state="closed")

        with self.assertLogs("common.state_machine", level="INFO") as logs:
            self.table.apply(door, "open")

        self.assertEqual(logs.records[0].getMessage(), "door_transitioned")
        self.assertEqual(logs.records[0].to_state, "open")


class GeoTests(SimpleTestCase):
    def test_coordinate_bounds_are_inclusive(self):
        self.assertEqual(validate_coordinates(90, -180), (90.0, -180.0))
        self.assertEqual(validate_coordinates("4.6", "-74.1"), (4.6, -74.1))

    def test_invalid_coordinates_report_each_field(self):
        with self.assertRaises(ValidationFailedError) as ctx:
            validate_coordinates(90.5, "west", prefix="client_")

        self.assertEqual(set(ctx.exception.details), {"client_latitude", "client_longitude"})
        for value in (None, True, float("nan")):
            with self.subTest(value=value), self.assertRaises(ValidationFailedError):
                validate_coordinates(value, 0)

    def test_speed(self):
        self.assertEqual(validate_speed(None), 0.0)
        self.assertEqual(validate_speed("35.5"), 35.5)
        with self.assertRaises(ValidationFailedError):
            validate_speed(-1)

    def test_interpolate_clamps_fraction(self):
        self.assertEqual(interpolate((0, 0), (10, 20), 0.5), (5.0, 10.0))
        self.assertEqual(interpolate((0, 0), (10, 20), 1.7), (10, 20))
        self.assertEqual(interpolate((0, 0), (10, 20), -1), (0, 0))

    def test_haversine(self):
        self.assertEqual(haversine_km((4.6, -74.1), (4.6, -74.1)), 0)
        self.assertAlmostEqual(haversine_km((0, 0), (0, 1)), 111.19, places=1)

    def test_validate_place(self):
        place = validate_place({"name": " Bodega ", "address": "Calle 1", "latitude": 4.6, "longitude": -74.1}, "origin")

        self.assertEqual(place, {"name": "Bodega", "address": "Calle 1", "latitude": 4.6, "longitude": -74.1})
        with self.assertRaises(ValidationFailedError) as ctx:
            validate_place({"name": "", "latitude": 100, "longitude": 0}, "origin")
        self.assertEqual(set(ctx.exception.details), {"origin_name", "origin_address", "origin_latitude"})


class DomainErrorTests(SimpleTestCase):
    def test_insufficient_stock_reports_shortfall(self):
        error = InsufficientStockError(20, 25, product_id="p-1")

        self.assertEqual(error.details, {"available": 20, "requested": 25, "shortfall": 5, "product_id": "p-1"})
        self.assertEqual(error.status_code, 409)

    def test_not_found_details(self):
        error = NotFoundError("route", 12)

        self.assertEqual(error.message, "Route not found.")
        self.assertEqual(error.details, {"entity": "route", "id": "12"})

    def test_envelope_shape(self):
        self.assertEqual(
            build_error_envelope(code="conflict", message="Busy.", errors=None, status_code=409),
            {"code": "conflict", "message": "Busy.", "errors": None, "status": 409},
        )


class JsonFormatterTests(SimpleTestCase):
    def test_context_fields_are_serialized(self):
        record = logging.LogRecord("inventory.services", logging.INFO, __file__, 1, "movement_recorded", None, None)
        record.product_id = "abc"
        record.quantity = 3

        payload = JsonFormatter().format(record)

        self.assertIn('"message": "movement_recorded"', payload)
        self.assertIn('"product_id": "abc"', payload)
        self.assertIn('"quantity": 3', payload)
