from django.core.exceptions import ValidationError as DjangoValidationError

from common.exceptions import InactiveEntityError, NotFoundError, ValidationFailedError
from core.models import User


def resolve_user(user_id, *, entity="user"):
    """Fetch an active user or raise the matching domain error."""
    if user_id is None:
        raise ValidationFailedError(details={entity: "This field is required."})
    try:
        user = User.objects.get(pk=user_id)
    except (User.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(entity, user_id)
    if not user.is_active:
        raise InactiveEntityError(entity, user.pk)
    return user


def resolve_driver(driver_id):
    driver = resolve_user(driver_id, entity="driver")
    if driver.role != User.Role.CONDUCTOR:
        raise ValidationFailedError(
            "The selected user is not a driver.",
            details={"driver": f"User role is '{driver.role}', expected '{User.Role.CONDUCTOR}'."},
        )
    return driver
