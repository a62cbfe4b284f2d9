import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ROLE_CAPABILITY_MATRIX = {
    "request.view": {User.Role.OPERATIONS, User.Role.LOGISTICS, User.Role.ADMIN},
    "request.create": {User.Role.OPERATIONS, User.Role.ADMIN},
    "request.classify": {User.Role.OPERATIONS, User.Role.LOGISTICS, User.Role.ADMIN},
    "procurement.process": {User.Role.LOGISTICS, User.Role.ADMIN},
    "branch.confirm": {User.Role.OPERATIONS, User.Role.ADMIN},
    "issue.report": {User.Role.LOGISTICS, User.Role.ADMIN},
    "process.terminate": {User.Role.LOGISTICS, User.Role.ADMIN},
    "set.refresh": {User.Role.LOGISTICS, User.Role.ADMIN},
    "outbox.pull": {User.Role.OPERATIONS, User.Role.LOGISTICS, User.Role.ADMIN},
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
    return User.Role.OPERATIONS


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts.

    Views may define ``get_required_capability(request)`` when the capability
    depends on more than the action name (for example the transition in the URL).
    """

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        action_key = getattr(view, "action", None) or request.method.lower()
        resolver = getattr(view, "get_required_capability", None)
        capability = resolver(request) if resolver else None
        if capability is None:
            capability = getattr(view, "permission_action_map", {}).get(action_key)
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
