"""
Put Role Package Endpoint - POST /admin/role-packages

Administrator create-or-replace of a catalog entry. Existing roles keep
the duration and listings they were sold with; only new checkouts and
renewals see the change.
"""

import logging
import re
from decimal import Decimal, InvalidOperation

from botocore.exceptions import ClientError

from shared.dynamo import get_role_package, put_role_package
from shared.errors import APIError, InvalidRequestError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import error_response, success_response
from shared.session_auth import authenticate, require_admin
from shared.types import Role, RolePackage

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PACKAGE_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,63}$")

# Roles a package may grant; admin is never for sale and user is the base role
GRANTABLE_ROLES = frozenset({Role.AGENT, Role.SELLER, Role.LOAN_OFFICER})


def _invalid(field: str, message: str) -> InvalidRequestError:
    return InvalidRequestError(message, details={"field": field}, code="invalid_package")


def _positive_int(body: dict, field: str, allow_zero: bool = False) -> int:
    value = body.get(field)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or (value == 0 and not allow_zero):
        raise _invalid(field, f"{field} must be a {'non-negative' if allow_zero else 'positive'} integer")
    return value


def package_from_body(body: dict) -> RolePackage:
    """
    Validate a catalog payload.

    Raises:
        InvalidRequestError: a field is missing or out of range
    """
    package_id = body.get("packageId")
    if not isinstance(package_id, str) or not PACKAGE_ID_PATTERN.match(package_id):
        raise _invalid("packageId", "packageId must be 2-64 lowercase letters, digits or dashes")

    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        raise _invalid("name", "name is required")

    raw_price = body.get("price")
    try:
        if isinstance(raw_price, bool):
            raise InvalidOperation
        price = Decimal(str(raw_price))
    except InvalidOperation:
        raise _invalid("price", "price must be a number")
    # Cents are the smallest unit the checkout can charge
    if not price.is_finite() or price <= 0 or price.as_tuple().exponent < -2:
        raise _invalid("price", "price must be positive with at most two decimal places")

    granted = Role.parse(body.get("grantedRole"))
    if granted not in GRANTABLE_ROLES:
        raise _invalid("grantedRole", f"grantedRole must be one of {sorted(r.value for r in GRANTABLE_ROLES)}")

    return {
        "pk": package_id,
        "name": name.strip(),
        "price": price,
        "duration_days": _positive_int(body, "durationDays"),
        "listing_limit": _positive_int(body, "listingLimit", allow_zero=True),
        "granted_role": granted.value,
    }


def handler(event, context):
    """
    Request body:
    {
        "packageId": "agent-monthly",
        "name": "Agent Monthly",
        "price": 100,
        "durationDays": 30,
        "listingLimit": 10,
        "grantedRole": "agent"
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        session = authenticate(event)
        admin = require_admin(session)
        package = package_from_body(parse_json_body(event))
    except APIError as e:
        return e.to_response(origin)
    except ClientError as e:
        logger.error(f"Store error loading admin: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    try:
        replaced = get_role_package(package["pk"]) is not None
        put_role_package(package)
    except ClientError as e:
        logger.error(f"Store error saving package {package['pk']}: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    logger.info(
        f"Role package {package['pk']} {'replaced' if replaced else 'created'} by {admin['pk']}",
        extra={"role_package_id": package["pk"], "user_id": admin["pk"]},
    )

    return success_response(
        {
            "success": True,
            "message": "Role package saved",
            "package": {
                "id": package["pk"],
                "name": package["name"],
                "price": package["price"],
                "duration_days": package["duration_days"],
                "listing_limit": package["listing_limit"],
                "granted_role": package["granted_role"],
            },
        },
        status_code=200 if replaced else 201,
        origin=origin,
    )
