import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from common.exceptions import (
    InactiveEntityError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
    translate_database_errors,
)
from core.services import resolve_driver
from fleet.models import Vehicle

logger = logging.getLogger(__name__)


def lock_vehicle(vehicle_id):
    """Row-lock a vehicle inside the caller's transaction."""
    try:
        return Vehicle.objects.select_for_update().get(pk=vehicle_id)
    except (Vehicle.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("vehicle", vehicle_id)


def _validate_state(new_state):
    if new_state not in Vehicle.State.values:
        raise ValidationFailedError(
            f"Invalid vehicle state '{new_state}'.",
            details={"state": f"Must be one of: {', '.join(Vehicle.State.values)}."},
        )
    return Vehicle.State(new_state)


def apply_state(vehicle, new_state, *, driver=None):
    """Set state (and optionally driver) on a vehicle already locked by the caller."""
    new_state = _validate_state(new_state)
    if driver is not None:
        vehicle.assigned_driver = driver
    if new_state == Vehicle.State.EN_RUTA and vehicle.assigned_driver_id is None:
        raise InvalidStateError(
            "A vehicle on route must have an assigned driver.",
            details={"vehicle_id": str(vehicle.pk)},
        )
    previous = vehicle.state
    vehicle.state = new_state
    vehicle.save(update_fields=["state", "assigned_driver", "updated_at"])
    logger.info(
        "vehicle_state_changed",
        extra={"vehicle_id": vehicle.pk, "from_state": previous, "to_state": new_state},
    )
    return vehicle


@translate_database_errors
def assign_driver(vehicle_id, driver_id):
    with transaction.atomic():
        vehicle = lock_vehicle(vehicle_id)
        if not vehicle.is_active:
            raise InactiveEntityError("vehicle", vehicle.pk)
        if vehicle.state != Vehicle.State.DISPONIBLE:
            raise InvalidStateError(
                f"The vehicle is not available. Current state: {vehicle.state}.",
                details={"vehicle_id": str(vehicle.pk), "state": vehicle.state},
            )
        driver = resolve_driver(driver_id)
        vehicle.assigned_driver = driver
        vehicle.save(update_fields=["assigned_driver", "updated_at"])

    logger.info("vehicle_driver_assigned", extra={"vehicle_id": vehicle.pk, "user_id": driver.pk})
    return vehicle


@translate_database_errors
def change_state(vehicle_id, new_state):
    new_state = _validate_state(new_state)
    with transaction.atomic():
        vehicle = lock_vehicle(vehicle_id)
        return apply_state(vehicle, new_state)


@translate_database_errors
def release_driver(vehicle_id):
    with transaction.atomic():
        vehicle = lock_vehicle(vehicle_id)
        vehicle.assigned_driver = None
        if vehicle.state == Vehicle.State.EN_RUTA:
            vehicle.state = Vehicle.State.DISPONIBLE
        vehicle.save(update_fields=["assigned_driver", "state", "updated_at"])

    logger.info("vehicle_driver_released", extra={"vehicle_id": vehicle.pk})
    return vehicle


def available_vehicles():
    return Vehicle.objects.filter(state=Vehicle.State.DISPONIBLE, is_active=True).select_related("assigned_driver")
