import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

# Till staff ring up sales and look up stock; everything else is back office.
OPERATOR_CAPABILITIES = frozenset(
    {
        "orders.create",
        "orders.receipt",
        "customers.attach",
        "inventory.view",
        "settings.view",
    }
)
ADMIN_CAPABILITIES = OPERATOR_CAPABILITIES | {
    "orders.view",
    "orders.status.change",
    "wiggers.manage",
    "inventory.manage",
    "reports.view",
    "settings.manage",
    "users.manage",
}
OWNER_ONLY_CAPABILITIES = frozenset({"orders.edit", "orders.delete", "customers.manage"})

CAPABILITIES_BY_ROLE = {
    User.Role.ORDER_OPERATOR: OPERATOR_CAPABILITIES,
    User.Role.ADMIN: ADMIN_CAPABILITIES,
    User.Role.SUPER_ADMIN: ADMIN_CAPABILITIES | OWNER_ONLY_CAPABILITIES,
}


def get_user_role(user):
    """Effective role, with Django superusers treated as owners and staff as admins."""
    if user is None or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.SUPER_ADMIN
    if getattr(user, "role", None):
        return User.normalize_role(user.role)
    return User.Role.ADMIN if user.is_staff else User.Role.ORDER_OPERATOR


def user_has_capability(user, capability):
    role = get_user_role(user)
    return role is not None and capability in CAPABILITIES_BY_ROLE.get(role, ())


class RoleCapabilityPermission(BasePermission):
    """Looks up the capability a view needs in its ``permission_action_map``.

    Viewsets are keyed by action name, plain API views by lowercase HTTP
    method. Unmapped actions fall through to the other permission classes.
    Refusals are logged on the ``security.authorization`` channel.
    """

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        key = getattr(view, "action", None) or request.method.lower()
        capability = getattr(view, "permission_action_map", {}).get(key)
        if capability is None or user_has_capability(request.user, capability):
            return True

        logger.warning(
            "permission_denied capability=%s user=%s role=%s %s %s view=%s",
            capability,
            getattr(request.user, "username", None) or "anonymous",
            get_user_role(request.user),
            request.method,
            request.path,
            type(view).__name__,
        )
        return False
