import logging
from datetime import datetime

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone

from common.exceptions import (
    ConflictError,
    InactiveEntityError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
    translate_database_errors,
)
from common.geo import validate_coordinates, validate_place, validate_speed
from common.numbering import next_serial_number
from common.state_machine import TransitionTable
from core.services import resolve_driver, resolve_user
from deliveries.services import seed_from_route
from fleet.models import Vehicle
from fleet.services import apply_state, lock_vehicle
from inventory.services import resolve_line_items
from routes.models import Route, RouteItem, RouteTrackingPoint

logger = logging.getLogger(__name__)

State = Route.State

ROUTE_TRANSITIONS = TransitionTable(
    "route",
    {
        State.PLANIFICADA: [State.EN_TRANSITO, State.CANCELADA],
        State.EN_TRANSITO: [State.COMPLETADA, State.CANCELADA],
        State.COMPLETADA: [],
        State.CANCELADA: [],
    },
)


@ROUTE_TRANSITIONS.on(State.EN_TRANSITO)
def _claim_vehicle(route, *, source, now, **context):
    vehicle = lock_vehicle(route.vehicle_id)
    if not vehicle.is_active:
        raise InactiveEntityError("vehicle", vehicle.pk)
    if vehicle.state != Vehicle.State.DISPONIBLE:
        raise InvalidStateError(
            f"The vehicle is not available. Current state: {vehicle.state}.",
            details={"vehicle_id": str(vehicle.pk), "state": vehicle.state},
        )
    if vehicle.assigned_driver_id not in (None, route.driver_id):
        logger.info(
            "vehicle_driver_replaced",
            extra={"vehicle_id": vehicle.pk, "route_id": route.pk, "user_id": route.driver_id},
        )
    # The vehicle travels with the route's driver.
    apply_state(vehicle, Vehicle.State.EN_RUTA, driver=route.driver)
    route.started_at = now


@ROUTE_TRANSITIONS.on(State.COMPLETADA)
def _close_route(route, *, source, now, **context):
    route.items.update(quantity_delivered=F("quantity_planned"))
    vehicle = lock_vehicle(route.vehicle_id)
    apply_state(vehicle, Vehicle.State.DISPONIBLE)
    route.finished_at = now
    seed_from_route(route, now=now)


@ROUTE_TRANSITIONS.on(State.CANCELADA)
def _cancel_route(route, *, source, reason=None, **context):
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailedError(details={"reason": "A cancellation reason is required."})
    route.cancellation_reason = reason
    if source == State.EN_TRANSITO:
        vehicle = lock_vehicle(route.vehicle_id)
        if vehicle.state == Vehicle.State.EN_RUTA:
            apply_state(vehicle, Vehicle.State.DISPONIBLE)


def _lock_route(route_id):
    try:
        return Route.objects.select_for_update().get(pk=route_id)
    except (Route.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("route", route_id)


def _next_route_number(now):
    return next_serial_number(Route, f"R{timezone.localtime(now):%Y%m}")


def _validate_scheduled_at(scheduled_at):
    if not isinstance(scheduled_at, datetime):
        raise ValidationFailedError(details={"scheduled_at": "A date and time is required."})
    if timezone.is_naive(scheduled_at):
        scheduled_at = timezone.make_aware(scheduled_at)
    if timezone.localdate(scheduled_at) < timezone.localdate():
        raise ValidationFailedError(details={"scheduled_at": "The scheduled date cannot be in the past."})
    return scheduled_at


def _available_vehicle(vehicle_id):
    try:
        vehicle = Vehicle.objects.get(pk=vehicle_id)
    except (Vehicle.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("vehicle", vehicle_id)
    if not vehicle.is_active:
        raise InactiveEntityError("vehicle", vehicle.pk)
    if vehicle.state != Vehicle.State.DISPONIBLE:
        raise InvalidStateError(
            f"The vehicle is not available. Current state: {vehicle.state}.",
            details={"vehicle_id": str(vehicle.pk), "state": vehicle.state},
        )
    return vehicle


def _ensure_driver_free(driver, scheduled_at):
    day = timezone.localdate(scheduled_at)
    clash = Route.objects.filter(driver=driver, state__in=Route.ACTIVE_STATES, scheduled_at__date=day).first()
    if clash is not None:
        raise ConflictError(
            "The driver already has an active route on that day.",
            details={"driver_id": str(driver.pk), "route_id": str(clash.pk), "date": day.isoformat()},
        )


@translate_database_errors
def create_route(
    origin,
    destination,
    scheduled_at,
    vehicle_id,
    driver_id,
    items,
    *,
    priority=Route.Priority.MEDIA,
    distance_km=None,
    estimated_hours=None,
    notes="",
    created_by=None,
):
    origin_place = validate_place(origin, "origin")
    destination_place = validate_place(destination, "destination")
    scheduled_at = _validate_scheduled_at(scheduled_at)
    if priority not in Route.Priority.values:
        raise ValidationFailedError(details={"priority": f"Must be one of: {', '.join(Route.Priority.values)}."})
    for field, value in (("distance_km", distance_km), ("estimated_hours", estimated_hours)):
        if value is not None and value < 0:
            raise ValidationFailedError(details={field: "Must be a positive number."})

    vehicle = _available_vehicle(vehicle_id)
    driver = resolve_driver(driver_id)
    lines = resolve_line_items(items, check_stock=True)

    with transaction.atomic():
        _ensure_driver_free(driver, scheduled_at)
        route = Route.objects.create(
            number=_next_route_number(timezone.now()),
            origin_name=origin_place["name"],
            origin_address=origin_place["address"],
            origin_latitude=origin_place["latitude"],
            origin_longitude=origin_place["longitude"],
            destination_name=destination_place["name"],
            destination_address=destination_place["address"],
            destination_latitude=destination_place["latitude"],
            destination_longitude=destination_place["longitude"],
            destination_contact_name=str(destination.get("contact_name") or "").strip(),
            destination_contact_phone=str(destination.get("contact_phone") or "").strip(),
            destination_contact_email=str(destination.get("contact_email") or "").strip(),
            scheduled_at=scheduled_at,
            vehicle=vehicle,
            driver=driver,
            priority=priority,
            distance_km=distance_km,
            estimated_hours=estimated_hours,
            notes=(notes or "").strip(),
            created_by=created_by,
        )
        RouteItem.objects.bulk_create(
            [RouteItem(route=route, product=product, quantity_planned=quantity) for product, quantity, _note in lines]
        )

    logger.info("route_created", extra={"route_id": route.pk, "vehicle_id": vehicle.pk, "user_id": driver.pk})
    return route


@translate_database_errors
def transition_route(route_id, target, reason=None):
    """Move a route to `target`, applying the vehicle and delivery side effects atomically."""
    with transaction.atomic():
        route = _lock_route(route_id)
        ROUTE_TRANSITIONS.apply(route, target, now=timezone.now(), reason=reason)
        route.save()
    return route


def start_route(route_id):
    return transition_route(route_id, State.EN_TRANSITO)


@translate_database_errors
def register_route_tracking(route_id, latitude, longitude, speed=0, note=""):
    latitude, longitude = validate_coordinates(latitude, longitude)
    speed = validate_speed(speed)
    note = (note or "").strip()[:255]

    with transaction.atomic():
        route = _lock_route(route_id)
        if route.state != State.EN_TRANSITO:
            raise InvalidStateError(
                "Tracking can only be registered for routes in transit.",
                details={"route_id": str(route.pk), "state": route.state},
            )
        last_point = route.tracking_points.order_by("-sequence").first()
        point = RouteTrackingPoint.objects.create(
            route=route,
            sequence=(last_point.sequence + 1) if last_point else 1,
            latitude=latitude,
            longitude=longitude,
            speed=speed,
            note=note,
        )

    logger.info("route_tracking_registered", extra={"route_id": route.pk})
    return point


@translate_database_errors
def register_delivered_quantities(route_id, deliveries):
    """Record delivered units per product; a fully delivered route completes."""
    if not deliveries:
        raise ValidationFailedError(details={"deliveries": "At least one entry is required."})

    with transaction.atomic():
        route = _lock_route(route_id)
        if route.state != State.EN_TRANSITO:
            raise InvalidStateError(
                "Delivered quantities can only be registered for routes in transit.",
                details={"route_id": str(route.pk), "state": route.state},
            )
        items = {str(item.product_id): item for item in route.items.all()}
        for entry in deliveries:
            product_id = str(entry.get("product"))
            quantity = entry.get("quantity_delivered")
            item = items.get(product_id)
            if item is None:
                raise ValidationFailedError(details={"deliveries": f"Product {product_id} is not part of this route."})
            if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 <= quantity <= item.quantity_planned:
                raise ValidationFailedError(
                    details={"deliveries": f"Delivered quantity for product {product_id} must be between 0 and {item.quantity_planned}."}
                )
            item.quantity_delivered = quantity
            item.save(update_fields=["quantity_delivered"])

        if all(item.quantity_delivered == item.quantity_planned for item in items.values()):
            ROUTE_TRANSITIONS.apply(route, State.COMPLETADA, now=timezone.now())
            route.save()

    return route


def active_routes_for_driver(driver_id):
    driver = resolve_user(driver_id, entity="driver")
    return (
        Route.objects.filter(driver=driver, state__in=Route.ACTIVE_STATES)
        .select_related("vehicle")
        .prefetch_related("items__product")
        .order_by("scheduled_at")
    )


def route_history(driver_id=None, date_from=None, date_to=None):
    """Return finished routes and a completed/cancelled tally for the same filters."""
    queryset = Route.objects.filter(state__in=[State.COMPLETADA, State.CANCELADA]).select_related("vehicle", "driver")
    if driver_id:
        queryset = queryset.filter(driver_id=driver_id)
    if date_from:
        queryset = queryset.filter(scheduled_at__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(scheduled_at__date__lte=date_to)
    counts = queryset.aggregate(
        completed=Count("id", filter=Q(state=State.COMPLETADA)),
        cancelled=Count("id", filter=Q(state=State.CANCELADA)),
    )
    return queryset.order_by("-scheduled_at"), counts


def ensure_route_deletable(route):
    if route.state == State.EN_TRANSITO:
        raise InvalidStateError(
            "Routes in transit cannot be deleted.",
            details={"route_id": str(route.pk), "state": route.state},
        )
