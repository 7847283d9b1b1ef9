import logging
import random

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from common.exceptions import (
    ConflictError,
    InactiveEntityError,
    InvalidStateError,
    NotFoundError,
    TrackingNotActiveError,
    ValidationFailedError,
    translate_database_errors,
)
from common.geo import haversine_km, interpolate, validate_place
from common.numbering import next_serial_number
from common.state_machine import TransitionTable
from core.services import resolve_driver
from deliveries.locations import get_location_lookup
from deliveries.models import Delivery, DeliveryItem, DeliveryTrackingPoint
from fleet.models import Vehicle
from inventory.services import resolve_line_items
from routes.models import Route

logger = logging.getLogger(__name__)

State = Delivery.State

DELIVERY_TRANSITIONS = TransitionTable(
    "delivery",
    {
        State.PENDIENTE: [State.EN_PROCESO, State.RETRASADO],
        State.EN_PROCESO: [State.ENTREGADO, State.RETRASADO, State.CANCELADO],
        State.RETRASADO: [State.EN_PROCESO, State.ENTREGADO, State.CANCELADO],
        State.ENTREGADO: [],
        State.CANCELADO: [],
    },
)

STEP_PROGRESS_RANGE = (5, 15)
STEP_SPEED_RANGE_KMH = (20, 80)


def _require_reason(reason, field):
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailedError(details={field: "A reason is required."})
    return reason


@DELIVERY_TRANSITIONS.on(State.EN_PROCESO)
def _mark_started(delivery, *, source, now, **context):
    if delivery.started_at is None:
        delivery.started_at = now


@DELIVERY_TRANSITIONS.on(State.EN_PROCESO, source=State.RETRASADO)
def _resume_tracking(delivery, *, source, **context):
    delivery.tracking_active = delivery.tracking_points.exists()


@DELIVERY_TRANSITIONS.on(State.RETRASADO)
def _pause_for_delay(delivery, *, source, reason=None, **context):
    delivery.delay_reason = _require_reason(reason, "reason")
    delivery.tracking_active = False


@DELIVERY_TRANSITIONS.on(State.CANCELADO)
def _stop_on_cancel(delivery, *, source, reason=None, **context):
    delivery.cancellation_reason = _require_reason(reason, "reason")
    delivery.tracking_active = False


@DELIVERY_TRANSITIONS.on(State.ENTREGADO)
def _settle_items(delivery, *, source, now, items_delivered=None, **context):
    items_delivered = items_delivered or {}
    for item in delivery.items.all():
        item.quantity_delivered = items_delivered.get(str(item.product_id), item.quantity_programmed)
        item.save(update_fields=["quantity_delivered"])
    delivery.delivered_at = now
    delivery.tracking_active = False
    delivery.estimated_arrival_minutes = 0


def _lock_delivery(delivery_id):
    try:
        return Delivery.objects.select_for_update().get(pk=delivery_id)
    except (Delivery.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("delivery", delivery_id)


def _resolve_vehicle(vehicle_id):
    try:
        vehicle = Vehicle.objects.get(pk=vehicle_id)
    except (Vehicle.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("vehicle", vehicle_id)
    if not vehicle.is_active:
        raise InactiveEntityError("vehicle", vehicle.pk)
    return vehicle


def _next_delivery_number(now):
    return next_serial_number(Delivery, f"ENT{timezone.localtime(now):%Y%m%d}")


def _last_point(delivery):
    return delivery.tracking_points.order_by("-sequence").first()


def _append_point(delivery, last_point, *, latitude, longitude, speed, progress, label, now):
    return DeliveryTrackingPoint.objects.create(
        delivery=delivery,
        sequence=(last_point.sequence + 1) if last_point else 1,
        latitude=latitude,
        longitude=longitude,
        speed=speed,
        progress=progress,
        label=label,
        recorded_at=now,
    )


def _move_to(delivery, latitude, longitude, now):
    delivery.current_latitude = latitude
    delivery.current_longitude = longitude
    delivery.position_updated_at = now


@translate_database_errors
def create_delivery(
    *,
    driver_id,
    vehicle_id,
    client,
    origin,
    items,
    scheduled_at,
    route_id=None,
    total_distance_km=None,
    notes="",
    created_by=None,
):
    client_place = validate_place(client, "client")
    origin_place = validate_place(origin, "origin")
    if scheduled_at is None:
        raise ValidationFailedError(details={"scheduled_at": "This field is required."})
    if total_distance_km is not None and total_distance_km < 0:
        raise ValidationFailedError(details={"total_distance_km": "Distance cannot be negative."})

    driver = resolve_driver(driver_id)
    vehicle = _resolve_vehicle(vehicle_id)
    lines = resolve_line_items(items)
    route = None
    if route_id is not None:
        route = Route.objects.filter(pk=route_id).first()
        if route is None:
            raise NotFoundError("route", route_id)

    if total_distance_km is None:
        total_distance_km = round(
            haversine_km(
                (origin_place["latitude"], origin_place["longitude"]),
                (client_place["latitude"], client_place["longitude"]),
            ),
            2,
        )

    now = timezone.now()
    with transaction.atomic():
        delivery = Delivery.objects.create(
            number=_next_delivery_number(now),
            route=route,
            driver=driver,
            vehicle=vehicle,
            client_name=client_place["name"],
            client_address=client_place["address"],
            client_latitude=client_place["latitude"],
            client_longitude=client_place["longitude"],
            client_phone=str(client.get("phone") or "").strip(),
            client_email=str(client.get("email") or "").strip(),
            origin_name=origin_place["name"],
            origin_address=origin_place["address"],
            origin_latitude=origin_place["latitude"],
            origin_longitude=origin_place["longitude"],
            scheduled_at=scheduled_at,
            total_distance_km=float(total_distance_km),
            notes=(notes or "").strip(),
            created_by=created_by,
        )
        DeliveryItem.objects.bulk_create(
            [
                DeliveryItem(delivery=delivery, product=product, quantity_programmed=quantity, note=note)
                for product, quantity, note in lines
            ]
        )

    logger.info("delivery_created", extra={"delivery_id": delivery.pk, "route_id": getattr(route, "pk", None)})
    return delivery


def _delivery_from_route(route, *, state, delivered, now, created_by=None):
    origin = (route.origin_latitude, route.origin_longitude)
    destination = (route.destination_latitude, route.destination_longitude)
    total_distance = float(route.distance_km) if route.distance_km is not None else round(haversine_km(origin, destination), 2)

    delivery = Delivery.objects.create(
        number=_next_delivery_number(now),
        route=route,
        driver_id=route.driver_id,
        vehicle_id=route.vehicle_id,
        client_name=route.destination_name,
        client_address=route.destination_address,
        client_latitude=route.destination_latitude,
        client_longitude=route.destination_longitude,
        client_phone=route.destination_contact_phone,
        client_email=route.destination_contact_email,
        origin_name=route.origin_name,
        origin_address=route.origin_address,
        origin_latitude=route.origin_latitude,
        origin_longitude=route.origin_longitude,
        state=state,
        scheduled_at=route.scheduled_at,
        total_distance_km=total_distance,
        created_by=created_by,
    )
    DeliveryItem.objects.bulk_create(
        [
            DeliveryItem(
                delivery=delivery,
                product_id=item.product_id,
                quantity_programmed=item.quantity_planned,
                quantity_delivered=item.quantity_planned if delivered else 0,
            )
            for item in route.items.all()
        ]
    )
    return delivery


def seed_from_route(route, *, now=None):
    """Create the delivered record for a completed route inside the caller's transaction."""
    now = now or timezone.now()
    delivery = _delivery_from_route(route, state=State.ENTREGADO, delivered=True, now=now)
    delivery.started_at = route.started_at
    delivery.delivered_at = now
    delivery.traveled_distance_km = delivery.total_distance_km
    delivery.estimated_arrival_minutes = 0
    _move_to(delivery, route.destination_latitude, route.destination_longitude, now)
    delivery.save(
        update_fields=[
            "started_at",
            "delivered_at",
            "traveled_distance_km",
            "estimated_arrival_minutes",
            "current_latitude",
            "current_longitude",
            "position_updated_at",
            "updated_at",
        ]
    )
    logger.info("delivery_seeded_from_route", extra={"delivery_id": delivery.pk, "route_id": route.pk})
    return delivery


@translate_database_errors
def create_delivery_from_route(route_id, *, created_by=None):
    with transaction.atomic():
        try:
            route = Route.objects.select_for_update().get(pk=route_id)
        except (Route.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError("route", route_id)
        if route.state == Route.State.CANCELADA:
            raise InvalidStateError(
                "Cancelled routes cannot produce deliveries.",
                details={"route_id": str(route.pk), "state": route.state},
            )
        if route.deliveries.exists():
            raise ConflictError(
                "The route already has a delivery.",
                details={"route_id": str(route.pk)},
            )
        delivery = _delivery_from_route(route, state=State.PENDIENTE, delivered=False, now=timezone.now(), created_by=created_by)

    logger.info("delivery_created", extra={"delivery_id": delivery.pk, "route_id": route.pk})
    return delivery


@translate_database_errors
def start_tracking(delivery_id):
    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        now = timezone.now()
        if delivery.state == State.PENDIENTE:
            DELIVERY_TRANSITIONS.apply(delivery, State.EN_PROCESO, now=now)
        elif delivery.state != State.EN_PROCESO:
            raise InvalidStateError(
                f"Tracking can only start for pending or in-progress deliveries. Current state: {delivery.state}.",
                details={"delivery_id": str(delivery.pk), "state": delivery.state},
            )

        last_point = _last_point(delivery)
        if last_point is None:
            _append_point(
                delivery,
                None,
                latitude=delivery.origin_latitude,
                longitude=delivery.origin_longitude,
                speed=0,
                progress=0,
                label=delivery.origin_name,
                now=now,
            )
            _move_to(delivery, delivery.origin_latitude, delivery.origin_longitude, now)
        delivery.tracking_active = True
        delivery.save()

    logger.info("delivery_tracking_started", extra={"delivery_id": delivery.pk})
    return delivery


@translate_database_errors
def simulate_step(delivery_id, location_lookup=None, rng=None):
    """Advance the simulated position of an in-progress delivery by one step.

    Progress grows by a random 5 to 15 points (capped at 100) and the position
    moves along the straight line from origin to client. Reaching 100 marks
    the delivery as delivered.
    """
    location_lookup = location_lookup or get_location_lookup()
    rng = rng or random.Random()

    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        if not delivery.tracking_active:
            raise TrackingNotActiveError(details={"delivery_id": str(delivery.pk), "state": delivery.state})

        now = timezone.now()
        last_point = _last_point(delivery)
        last_progress = last_point.progress if last_point else 0
        progress = round(min(last_progress + rng.uniform(*STEP_PROGRESS_RANGE), 100), 2)
        latitude, longitude = interpolate(
            (delivery.origin_latitude, delivery.origin_longitude),
            (delivery.client_latitude, delivery.client_longitude),
            progress / 100,
        )
        speed = round(rng.uniform(*STEP_SPEED_RANGE_KMH), 1)
        _append_point(
            delivery,
            last_point,
            latitude=latitude,
            longitude=longitude,
            speed=speed,
            progress=progress,
            label=location_lookup.random_label(),
            now=now,
        )
        _move_to(delivery, latitude, longitude, now)
        delivery.traveled_distance_km = round(progress / 100 * delivery.total_distance_km, 2)
        remaining_km = delivery.total_distance_km - delivery.traveled_distance_km
        delivery.estimated_arrival_minutes = round(remaining_km / speed * 60)

        if progress >= 100:
            DELIVERY_TRANSITIONS.apply(delivery, State.ENTREGADO, now=now)
        delivery.save()

    logger.info(
        "delivery_tracking_step",
        extra={"delivery_id": delivery.pk, "progress": progress, "to_state": delivery.state},
    )
    return delivery


@translate_database_errors
def mark_delayed(delivery_id, reason):
    reason = _require_reason(reason, "reason")
    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        DELIVERY_TRANSITIONS.apply(delivery, State.RETRASADO, now=timezone.now(), reason=reason)
        delivery.save()
    return delivery


@translate_database_errors
def resume_delivery(delivery_id):
    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        if delivery.state != State.RETRASADO:
            raise InvalidStateError(
                "Only delayed deliveries can be resumed.",
                details={"delivery_id": str(delivery.pk), "state": delivery.state},
            )
        DELIVERY_TRANSITIONS.apply(delivery, State.EN_PROCESO, now=timezone.now())
        delivery.save()
    return delivery


def _validate_rating(rating):
    if rating is None:
        return None
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailedError(details={"rating": "Rating must be an integer between 1 and 5."})
    return rating


def _validate_items_delivered(delivery, items_delivered):
    if not items_delivered:
        return {}
    programmed = {str(item.product_id): item.quantity_programmed for item in delivery.items.all()}
    quantities = {}
    for entry in items_delivered:
        product_id = str(entry.get("product"))
        quantity = entry.get("quantity_delivered")
        if product_id not in programmed:
            raise ValidationFailedError(details={"items": f"Product {product_id} is not part of this delivery."})
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 <= quantity <= programmed[product_id]:
            raise ValidationFailedError(
                details={"items": f"Delivered quantity for product {product_id} must be between 0 and {programmed[product_id]}."}
            )
        quantities[product_id] = quantity
    return quantities


@translate_database_errors
def complete_delivery(delivery_id, signature=None, photo=None, rating=None, items_delivered=None):
    rating = _validate_rating(rating)
    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        DELIVERY_TRANSITIONS.check(delivery.state, State.ENTREGADO)
        quantities = _validate_items_delivered(delivery, items_delivered)

        now = timezone.now()
        _append_point(
            delivery,
            _last_point(delivery),
            latitude=delivery.client_latitude,
            longitude=delivery.client_longitude,
            speed=0,
            progress=100,
            label=delivery.client_address,
            now=now,
        )
        _move_to(delivery, delivery.client_latitude, delivery.client_longitude, now)
        delivery.traveled_distance_km = delivery.total_distance_km
        if signature:
            delivery.signature = signature
        if photo:
            delivery.photo = photo
        delivery.rating = rating
        DELIVERY_TRANSITIONS.apply(delivery, State.ENTREGADO, now=now, items_delivered=quantities)
        delivery.save()

    logger.info("delivery_completed", extra={"delivery_id": delivery.pk})
    return delivery


@translate_database_errors
def cancel_delivery(delivery_id, reason):
    reason = _require_reason(reason, "reason")
    with transaction.atomic():
        delivery = _lock_delivery(delivery_id)
        DELIVERY_TRANSITIONS.apply(delivery, State.CANCELADO, now=timezone.now(), reason=reason)
        delivery.save()
    return delivery


def ensure_delivery_deletable(delivery):
    if delivery.state == State.EN_PROCESO:
        raise InvalidStateError(
            "Deliveries in progress cannot be deleted.",
            details={"delivery_id": str(delivery.pk), "state": delivery.state},
        )


def delivery_history(driver_id=None, date_from=None, date_to=None):
    queryset = Delivery.objects.filter(state__in=Delivery.TERMINAL_STATES).select_related("driver", "vehicle", "route")
    if driver_id:
        queryset = queryset.filter(driver_id=driver_id)
    if date_from:
        queryset = queryset.filter(scheduled_at__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(scheduled_at__date__lte=date_to)
    return queryset.order_by("-delivered_at", "-updated_at")
