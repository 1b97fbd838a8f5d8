from .errors import Forbidden
from .states import Actor

ADMIN = "admin"
GROUND_OWNER = "ground_owner"


def roles_of(payload: dict) -> set[str]:
    roles = payload.get("roles")
    if not isinstance(roles, list):
        return set()
    return {str(r).lower() for r in roles}


def has_role(payload: dict, role: str) -> bool:
    return role.lower() in roles_of(payload)


def require_role(payload: dict, allowed_roles: list[str]):
    roles = roles_of(payload)
    if not roles:
        raise Forbidden("Roles missing in token")
    if roles.isdisjoint({r.lower() for r in allowed_roles}):
        raise Forbidden("Access forbidden for this role")


def actor_for(payload: dict, booking_user_id: str, ground_owner_id: str | None) -> Actor:
    """
    Resolves how the caller relates to a booking. Admins win over ground owners,
    ground owners over the booking's own user; anyone else is refused.
    """
    user_id = str(payload.get("sub"))
    if has_role(payload, ADMIN):
        return Actor.ADMIN
    if ground_owner_id and user_id == ground_owner_id:
        return Actor.OWNER
    if user_id == booking_user_id:
        return Actor.USER
    raise Forbidden("You do not have access to this booking")
