"""
Checkout session initiation for role packages.

Prices come from the catalog at the time of checkout. The session carries
correlation metadata that the reconciler reads back when Stripe reports
the payment.
"""

import logging
import os
from typing import Optional

from .activation import RoleState, derive_state
from .billing_utils import compute_checkout_amount, compute_total_listings, compute_units, to_minor_units
from .constants import (
    DEFAULT_CURRENCY,
    METADATA_DURATION_DAYS,
    METADATA_PACKAGE_ID,
    METADATA_RENEW_USER_ROLE_ID,
    METADATA_USER_ID,
    RESERVED_METADATA_KEYS,
    SUPPORTED_CURRENCIES,
)
from .dynamo import get_role_package, get_user
from .errors import ConflictError, NotFoundError, ValidationError
from .role_store import get_user_role
from .types import RolePackage, UserRecord

logger = logging.getLogger(__name__)

BASE_URL = os.environ.get("BASE_URL", "https://rolepass.app")


def normalize_currency(currency: Optional[str]) -> str:
    value = (currency or DEFAULT_CURRENCY).strip().lower()
    if value not in SUPPORTED_CURRENCIES:
        raise ValidationError(
            f"Unsupported currency {value}. Choose: {', '.join(SUPPORTED_CURRENCIES)}",
            code="invalid_currency",
        )
    return value


def build_session_metadata(
    user_id: str,
    package_id: str,
    duration_days: int,
    extra: Optional[dict] = None,
    renew_user_role_id: Optional[str] = None,
) -> dict[str, str]:
    """Caller metadata with the correlation keys written last so they cannot be overridden."""
    if extra is not None and not isinstance(extra, dict):
        raise ValidationError("metadata must be an object", code="invalid_metadata")

    metadata = {
        str(k): str(v)
        for k, v in (extra or {}).items()
        if k not in RESERVED_METADATA_KEYS and v is not None
    }
    metadata[METADATA_USER_ID] = user_id
    metadata[METADATA_PACKAGE_ID] = package_id
    metadata[METADATA_DURATION_DAYS] = str(duration_days)
    if renew_user_role_id:
        metadata[METADATA_RENEW_USER_ROLE_ID] = renew_user_role_id
    return metadata


def build_checkout_params(
    user: UserRecord,
    package: RolePackage,
    units: int,
    currency: str,
    metadata: dict[str, str],
) -> dict:
    """Stripe Checkout Session.create parameters for one role package purchase."""
    params = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": to_minor_units(package["price"]),
                    "product_data": {
                        "name": package.get("name") or package["pk"],
                        "description": (
                            f"{int(package['duration_days'])} days, "
                            f"{int(package.get('listing_limit') or 0)} listings"
                        ),
                    },
                },
                "quantity": units,
            }
        ],
        "success_url": f"{BASE_URL}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{BASE_URL}/payment-cancelled",
        "client_reference_id": user["pk"],
        "metadata": metadata,
        "invoice_creation": {"enabled": True, "invoice_data": {"metadata": metadata}},
    }
    if user.get("email"):
        params["customer_email"] = user["email"]
    return params


def create_role_checkout(
    gateway,
    user_id: str,
    package_id: str,
    duration_days,
    currency: Optional[str] = None,
    extra_metadata: Optional[dict] = None,
    renew_user_role_id: Optional[str] = None,
) -> dict:
    """
    Validate a purchase and open a Stripe Checkout session for it.

    Returns:
        {"checkout_url", "session_id", "amount", "currency", "quantity", "total_listings"}

    Raises:
        NotFoundError: package or user missing
        ValidationError: bad duration, currency or metadata
        ConflictError: user already holds a live role (fresh purchases only)
        TransientError: Stripe unavailable
    """
    package = get_role_package(package_id)
    if package is None:
        raise NotFoundError(f"Role package {package_id} not found", code="package_not_found")

    units = compute_units(duration_days, package)
    days = int(duration_days)
    currency = normalize_currency(currency)

    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", code="user_not_found")
    if user.get("live_user_role_id"):
        raise ConflictError("You already have an active role", code="active_role_exists")

    metadata = build_session_metadata(user_id, package_id, days, extra_metadata, renew_user_role_id)
    params = build_checkout_params(user, package, units, currency, metadata)

    session = gateway.create_checkout_session(params)
    amount = compute_checkout_amount(package, units)

    logger.info(
        f"Created checkout session {session.get('id')} for user {user_id}",
        extra={
            "session_id": session.get("id"),
            "package_id": package_id,
            "units": units,
            "amount": str(amount),
            "renewal": bool(renew_user_role_id),
        },
    )
    return {
        "checkout_url": session.get("url"),
        "session_id": session.get("id"),
        "amount": amount,
        "currency": currency,
        "quantity": units,
        "total_listings": compute_total_listings(package, units),
    }


def create_renewal_checkout(
    gateway,
    user_id: str,
    user_role_id: str,
    duration_days=None,
    currency: Optional[str] = None,
) -> dict:
    """
    Open a checkout session that renews an expired role in place.

    Defaults to the role's previous duration. Charged at the package's
    current catalog price.

    Raises:
        NotFoundError: role missing or not owned by user_id
        ConflictError: role not expired, or the user holds another live role
    """
    role = get_user_role(user_role_id)
    if role is None or role.get("user_id") != user_id:
        raise NotFoundError(f"User role {user_role_id} not found", code="role_not_found")
    if derive_state(role) is not RoleState.EXPIRED:
        raise ConflictError("Only expired roles can be renewed", code="role_not_expired")

    return create_role_checkout(
        gateway,
        user_id,
        role["role_package_id"],
        duration_days if duration_days is not None else role.get("duration_days"),
        currency=currency,
        renew_user_role_id=user_role_id,
    )
