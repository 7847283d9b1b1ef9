import logging

from rest_framework.permissions import SAFE_METHODS, BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_ROLES = {User.Role.ADMIN, User.Role.COORDINADOR, User.Role.CONDUCTOR, User.Role.OPERADOR}

ROLE_CAPABILITY_MATRIX = {
    "inventory.view": ALL_ROLES,
    "inventory.manage": {User.Role.ADMIN},
    "movement.create": {User.Role.ADMIN, User.Role.OPERADOR},
    "movement.report": {User.Role.ADMIN, User.Role.COORDINADOR},
    "fleet.view": ALL_ROLES,
    "fleet.manage": {User.Role.ADMIN, User.Role.COORDINADOR},
    "route.view": ALL_ROLES,
    "route.manage": {User.Role.ADMIN, User.Role.COORDINADOR},
    "route.operate": {User.Role.ADMIN, User.Role.COORDINADOR, User.Role.CONDUCTOR},
    "route.delete": {User.Role.ADMIN},
    "delivery.view": ALL_ROLES,
    "delivery.manage": {User.Role.ADMIN, User.Role.COORDINADOR},
    "delivery.operate": {User.Role.ADMIN, User.Role.COORDINADOR, User.Role.CONDUCTOR},
    "delivery.delete": {User.Role.ADMIN},
    "user.manage": {User.Role.ADMIN},
    "audit.view": {User.Role.ADMIN},
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.OPERADOR


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


def is_restricted_driver(user):
    """Drivers may only operate the routes and deliveries assigned to them."""
    return get_user_role(user) == User.Role.CONDUCTOR


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed


class AssignedDriverPermission(BasePermission):
    """Object-level check: a conductor only acts on objects whose `driver` is themselves."""

    message = "Only the assigned driver can operate this record."

    def has_object_permission(self, request, view, obj):
        if request.method in SAFE_METHODS or not is_restricted_driver(request.user):
            return True
        allowed = getattr(obj, "driver_id", None) == request.user.id
        if not allowed:
            logger.warning(
                "driver_scope_denied user=%s object=%s view=%s",
                getattr(request.user, "username", "anonymous"),
                getattr(obj, "pk", None),
                view.__class__.__name__,
            )
        return allowed
