"""
Role-Based Permissions

Grants are a closed set of (Role, Resource, Action) triples. The table is
checked when this module is imported, so a typo in a grant fails the
process at startup instead of silently denying access at runtime.

Usage:
    from order_engine.core.permissions import Role, Resource, Action, require

    require(Role.PERSONAL, Resource.ORDERS, Action.MODIFY_STATUS)
"""

from enum import Enum

from order_engine.core.exceptions import PermissionDenied


class Role(str, Enum):
    ADMIN = "admin"
    PERSONAL = "personal"


class Resource(str, Enum):
    ORDERS = "orders"
    MENU = "menu"
    REPORTS = "reports"
    NOTIFICATIONS = "notifications"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MODIFY_STATUS = "modify_status"
    TOGGLE_AVAILABILITY = "toggle_availability"
    MODIFY_PRICES = "modify_prices"
    VIEW_DAILY = "view_daily"
    SEND = "send"


# Actions that are meaningful for each resource.
RESOURCE_ACTIONS: dict[Resource, frozenset[Action]] = {
    Resource.ORDERS: frozenset({
        Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE, Action.MODIFY_STATUS,
    }),
    Resource.MENU: frozenset({
        Action.READ, Action.TOGGLE_AVAILABILITY, Action.MODIFY_PRICES,
    }),
    Resource.REPORTS: frozenset({Action.READ, Action.VIEW_DAILY}),
    Resource.NOTIFICATIONS: frozenset({Action.SEND}),
}


GRANTS: frozenset[tuple[Role, Resource, Action]] = frozenset({
    # Admin - full control
    (Role.ADMIN, Resource.ORDERS, Action.CREATE),
    (Role.ADMIN, Resource.ORDERS, Action.READ),
    (Role.ADMIN, Resource.ORDERS, Action.UPDATE),
    (Role.ADMIN, Resource.ORDERS, Action.DELETE),
    (Role.ADMIN, Resource.ORDERS, Action.MODIFY_STATUS),
    (Role.ADMIN, Resource.MENU, Action.READ),
    (Role.ADMIN, Resource.MENU, Action.TOGGLE_AVAILABILITY),
    (Role.ADMIN, Resource.MENU, Action.MODIFY_PRICES),
    (Role.ADMIN, Resource.REPORTS, Action.READ),
    (Role.ADMIN, Resource.REPORTS, Action.VIEW_DAILY),
    (Role.ADMIN, Resource.NOTIFICATIONS, Action.SEND),
    # Staff - day-to-day order handling
    (Role.PERSONAL, Resource.ORDERS, Action.CREATE),
    (Role.PERSONAL, Resource.ORDERS, Action.READ),
    (Role.PERSONAL, Resource.ORDERS, Action.UPDATE),
    (Role.PERSONAL, Resource.ORDERS, Action.MODIFY_STATUS),
    (Role.PERSONAL, Resource.MENU, Action.READ),
    (Role.PERSONAL, Resource.REPORTS, Action.READ),
    (Role.PERSONAL, Resource.REPORTS, Action.VIEW_DAILY),
    (Role.PERSONAL, Resource.NOTIFICATIONS, Action.SEND),
})


def validate_grants(grants: frozenset[tuple[Role, Resource, Action]]) -> None:
    """Raise RuntimeError if any grant is malformed or a role has no grants."""
    for role, resource, action in grants:
        if not isinstance(role, Role) or not isinstance(resource, Resource) or not isinstance(action, Action):
            raise RuntimeError(f"Grant uses values outside the closed enums: {(role, resource, action)}")
        if action not in RESOURCE_ACTIONS[resource]:
            raise RuntimeError(f"Action '{action.value}' is not defined for resource '{resource.value}'")

    granted_roles = {role for role, _, _ in grants}
    missing = [r.value for r in Role if r not in granted_roles]
    if missing:
        raise RuntimeError(f"Roles without any grant: {missing}")


validate_grants(GRANTS)


def parse_role(value: str) -> Role:
    """Convert an external role string, rejecting anything unknown."""
    try:
        return Role(value)
    except ValueError:
        raise PermissionDenied(f"unknown role '{value}'")


def has_permission(role: Role, resource: Resource, action: Action) -> bool:
    if action not in RESOURCE_ACTIONS[resource]:
        raise ValueError(f"Action '{action.value}' is not defined for resource '{resource.value}'")
    return (role, resource, action) in GRANTS


def require(role: Role, resource: Resource, action: Action) -> None:
    """Raise PermissionDenied unless the role holds the grant."""
    if not has_permission(role, resource, action):
        raise PermissionDenied(
            f"role '{role.value}' may not {action.value} {resource.value}"
        )
