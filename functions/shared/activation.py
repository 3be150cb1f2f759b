"""
Role activation state machine.

A UserRole's state is derived from its flags rather than stored:

    CREATED  --activate-->  ACTIVE  --pause-->  PAUSED
                              ^  <--resume--      |
    EXPIRED  --renew------>   |                   |
       ^--------expire------ ACTIVE / PAUSED -----+

Pausing is orthogonal to the active window: a paused role keeps
is_active=true and still expires on its end_date.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from .constants import LIVE_STATUS_ACTIVE
from .dynamo import USER_ROLES_TABLE, USERS_TABLE, get_role_package, get_user, iso, utcnow
from .errors import ConflictError, NotFoundError, ValidationError
from .role_store import WriteConflict, get_user_role, set_paused_flag, transact_write
from .types import Role, RolePackage, UserRoleRecord

logger = logging.getLogger(__name__)


class RoleState(Enum):
    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"


TRANSITIONS = {
    (RoleState.CREATED, "activate"): RoleState.ACTIVE,
    (RoleState.EXPIRED, "renew"): RoleState.ACTIVE,
    (RoleState.ACTIVE, "pause"): RoleState.PAUSED,
    (RoleState.PAUSED, "resume"): RoleState.ACTIVE,
    (RoleState.ACTIVE, "expire"): RoleState.EXPIRED,
    (RoleState.PAUSED, "expire"): RoleState.EXPIRED,
}


def derive_state(role: UserRoleRecord) -> RoleState:
    """
    Map stored flags to a lifecycle state.

    Raises:
        ConflictError: flags describe no legal state
    """
    if role.get("is_expired"):
        return RoleState.EXPIRED
    active = bool(role.get("is_active"))
    verified = bool(role.get("is_verified"))
    if active and verified:
        return RoleState.PAUSED if role.get("is_paused") else RoleState.ACTIVE
    if not active and not verified:
        return RoleState.CREATED
    raise ConflictError(f"Role {role.get('pk')} has inconsistent lifecycle flags", code="inconsistent_role_state")


def next_state(state: RoleState, action: str) -> RoleState:
    """
    Raises:
        ConflictError: action is not legal from state
    """
    target = TRANSITIONS.get((state, action))
    if target is None:
        raise ConflictError(f"Cannot {action} a role in state {state.value}", code="invalid_transition")
    return target


def granted_role_for(package: RolePackage) -> Role:
    role = Role.parse(package.get("granted_role"))
    if role is None:
        raise ValidationError(
            f"Role package {package.get('pk')} grants unknown role {package.get('granted_role')!r}",
            code="invalid_package",
        )
    return role


def activation_fields(duration_days: int, now: datetime, verified_by: str) -> dict:
    """Attributes written when a role enters ACTIVE."""
    stamp = iso(now)
    return {
        "start_date": stamp,
        "end_date": iso(now + timedelta(days=int(duration_days))),
        "is_active": True,
        "is_verified": True,
        "is_paused": False,
        "is_expired": False,
        "verified_by": verified_by,
        "verified_at": stamp,
        "live_status": LIVE_STATUS_ACTIVE,
        "updated_at": stamp,
    }


def role_update_item(
    user_role_id: str,
    fields: dict,
    condition: str,
    extra_values: Optional[dict] = None,
    extra_set: Iterable[str] = (),
    remove: Iterable[str] = (),
) -> dict:
    """TransactWriteItems Update that SETs every key of fields on a role."""
    names = {f"#{k}": k for k in fields}
    values = {f":{k}": v for k, v in fields.items()}
    values.update(extra_values or {})

    expression = "SET " + ", ".join([f"#{k} = :{k}" for k in fields] + list(extra_set))
    remove = list(remove)
    if remove:
        expression += " REMOVE " + ", ".join(remove)

    return {
        "Update": {
            "TableName": USER_ROLES_TABLE,
            "Key": {"pk": user_role_id},
            "UpdateExpression": expression,
            "ConditionExpression": condition,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
    }


def grant_role_item(user_id: str, user_role_id: str, granted: Role, condition: str, now: str) -> dict:
    """Snapshot the user's current role into previous_role and grant the package role."""
    return {
        "Update": {
            "TableName": USERS_TABLE,
            "Key": {"pk": user_id},
            "UpdateExpression": (
                "SET previous_role = if_not_exists(#role, :base), #role = :granted, "
                "live_user_role_id = :rid, updated_at = :now"
            ),
            "ConditionExpression": condition,
            "ExpressionAttributeNames": {"#role": "role"},
            "ExpressionAttributeValues": {
                ":base": Role.USER.value,
                ":granted": granted.value,
                ":rid": user_role_id,
                ":now": now,
            },
        }
    }


def activate_user_role(user_role_id: str, admin_user_id: str, now: Optional[datetime] = None) -> UserRoleRecord:
    """
    Move a CREATED role to ACTIVE on behalf of an administrator.

    Stamps the active window, marks the role verified and grants the
    package's role to the user in one transaction.

    Raises:
        NotFoundError: role, package or user missing
        ConflictError: role not in CREATED, or the user holds another live role
    """
    now = now or utcnow()

    role = get_user_role(user_role_id)
    if role is None:
        raise NotFoundError(f"User role {user_role_id} not found", code="role_not_found")

    state = derive_state(role)
    if state is RoleState.EXPIRED:
        raise ConflictError("Expired roles are re-activated through renewal", code="role_expired")
    if state in (RoleState.ACTIVE, RoleState.PAUSED):
        raise ConflictError("Role is already active", code="already_active")
    next_state(state, "activate")

    package = get_role_package(role.get("role_package_id"))
    if package is None:
        raise NotFoundError(f"Role package {role.get('role_package_id')} not found", code="package_not_found")
    granted = granted_role_for(package)

    user = get_user(role["user_id"])
    if user is None:
        raise NotFoundError(f"User {role['user_id']} not found", code="user_not_found")
    live_id = user.get("live_user_role_id")
    if live_id and live_id != user_role_id:
        raise ConflictError("User already holds another live role", code="active_role_exists")

    fields = activation_fields(role.get("duration_days") or package.get("duration_days"), now, admin_user_id)

    try:
        transact_write([
            role_update_item(
                user_role_id,
                fields,
                condition="attribute_exists(pk) AND is_active = :cur_f AND is_verified = :cur_f AND is_expired = :cur_f",
                extra_values={":cur_f": False},
            ),
            grant_role_item(
                role["user_id"],
                user_role_id,
                granted,
                condition="attribute_exists(pk) AND (attribute_not_exists(live_user_role_id) OR live_user_role_id = :rid)",
                now=fields["updated_at"],
            ),
        ])
    except WriteConflict as e:
        current = get_user_role(user_role_id)
        if current and derive_state(current) in (RoleState.ACTIVE, RoleState.PAUSED):
            raise ConflictError("Role is already active", code="already_active") from e
        raise ConflictError("User already holds another live role", code="active_role_exists") from e

    logger.info(
        f"Activated role {user_role_id} for user {role['user_id']}",
        extra={"user_role_id": user_role_id, "verified_by": admin_user_id, "granted_role": granted.value},
    )
    return {**role, **fields}


def set_paused(user_role_id: str, paused: bool, now: Optional[datetime] = None) -> UserRoleRecord:
    """
    Pause or resume an active role. The active window keeps running.

    Raises:
        NotFoundError: role missing
        ConflictError: role not ACTIVE (pause) or not PAUSED (resume)
    """
    now = now or utcnow()

    role = get_user_role(user_role_id)
    if role is None:
        raise NotFoundError(f"User role {user_role_id} not found", code="role_not_found")

    next_state(derive_state(role), "pause" if paused else "resume")

    stamp = iso(now)
    try:
        set_paused_flag(user_role_id, paused, stamp)
    except WriteConflict as e:
        raise ConflictError(str(e), code="invalid_transition") from e

    logger.info(f"Role {user_role_id} {'paused' if paused else 'resumed'}")
    return {**role, "is_paused": paused, "updated_at": stamp}
