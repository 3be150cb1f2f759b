"""Shared billing utilities: Stripe secrets and role package pricing."""

import json
import logging
import os
import time
from decimal import ROUND_HALF_UP, Decimal

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.errors import ValidationError
from shared.types import RolePackage

logger = logging.getLogger(__name__)

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes

MINOR_UNITS = Decimal("100")


def _read_secret(arn: str | None, json_field: str) -> str | None:
    if not arn:
        return None
    try:
        response = get_secretsmanager().get_secret_value(SecretId=arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or None
    return secret_value or None


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = _read_secret(os.environ.get("STRIPE_SECRET_ARN"), "key")
    webhook_secret = _read_secret(os.environ.get("STRIPE_WEBHOOK_SECRET_ARN"), "secret")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_stripe_secrets_cache() -> None:
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0


# ===========================================
# Pricing
# ===========================================


def compute_units(duration_days, package: RolePackage) -> int:
    """Number of billing units a purchase of duration_days covers.

    A package is sold in whole units of package["duration_days"] days, so
    60 days of a 30-day package is 2 units.

    Raises:
        ValidationError: duration is not a positive whole multiple of the unit
    """
    try:
        days = int(duration_days)
    except (TypeError, ValueError):
        raise ValidationError("durationDays must be an integer", code="invalid_duration")
    if isinstance(duration_days, float) and duration_days != days:
        raise ValidationError("durationDays must be an integer", code="invalid_duration")

    unit_days = int(package.get("duration_days") or 0)
    if unit_days <= 0:
        raise ValidationError(
            f"Role package {package.get('pk')} has no billing unit configured",
            code="invalid_package",
        )
    if days <= 0 or days % unit_days != 0:
        raise ValidationError(
            f"durationDays must be a positive multiple of {unit_days}",
            code="invalid_duration",
        )
    return days // unit_days


def compute_total_listings(package: RolePackage, units: int) -> int:
    return int(package.get("listing_limit") or 0) * units


def compute_checkout_amount(package: RolePackage, units: int) -> Decimal:
    """Catalog price for units of a package, in major currency units."""
    return Decimal(str(package["price"])) * units


def to_minor_units(amount: Decimal) -> int:
    """Major currency units to the integer minor units Stripe expects."""
    return int((Decimal(str(amount)) * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount) -> Decimal:
    """Integer minor units from Stripe to a Decimal in major units."""
    return Decimal(int(amount)) / MINOR_UNITS
