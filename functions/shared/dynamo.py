"""
DynamoDB helpers for users and the role package catalog.
"""

import logging
import os
import random
import time
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import THROTTLING_ERRORS
from .types import RolePackage, UserRecord

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE", "rolepass-users")
ROLE_PACKAGES_TABLE = os.environ.get("ROLE_PACKAGES_TABLE", "rolepass-role-packages")
USER_ROLES_TABLE = os.environ.get("USER_ROLES_TABLE", "rolepass-user-roles")
TRANSACTIONS_TABLE = os.environ.get("TRANSACTIONS_TABLE", "rolepass-transactions")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "rolepass-billing-events")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Serialize a datetime as an ISO-8601 UTC string with a Z suffix.

    Stored strings sort lexicographically in time order, which the
    expiry-index range condition relies on.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def get_item_with_retry(table_name: str, key: dict, max_retries: int = 3) -> Optional[dict]:
    """
    Get one item with retry for throttling.

    Returns None only when the item does not exist. Any other failure is
    raised so callers never mistake an outage for a missing record.

    Raises:
        ClientError: non-throttling failure, or throttled on every attempt
    """
    table = get_dynamodb().Table(table_name)

    for attempt in range(max_retries):
        try:
            response = table.get_item(Key=key)
            return response.get("Item")
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in THROTTLING_ERRORS and attempt < max_retries - 1:
                # Exponential backoff with jitter to prevent thundering herd
                base_delay = min(0.1 * (2 ** attempt), 2.0)
                delay = base_delay + random.uniform(0, base_delay * 0.5)
                logger.warning(
                    f"DynamoDB throttled reading {table_name} {key}, "
                    f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
                )
                time.sleep(delay)
                continue
            logger.error(f"Error reading {table_name} {key}: {e}")
            raise
    return None


def get_user(user_id: str) -> Optional[UserRecord]:
    if not user_id:
        return None
    return get_item_with_retry(USERS_TABLE, {"pk": user_id})


def get_role_package(package_id: str) -> Optional[RolePackage]:
    if not package_id:
        return None
    return get_item_with_retry(ROLE_PACKAGES_TABLE, {"pk": package_id})


def put_role_package(package: RolePackage) -> None:
    """
    Store or replace a catalog entry.

    Args:
        package: Package item; must carry pk, price, duration_days and
            granted_role
    """
    table = get_dynamodb().Table(ROLE_PACKAGES_TABLE)

    item = {"created_at": iso(utcnow()), **package}
    # DynamoDB rejects empty strings in key attributes
    item = {k: v for k, v in item.items() if v is not None and v != ""}

    table.put_item(Item=item)


def list_role_packages() -> list[RolePackage]:
    """Return the whole catalog (small, admin-managed)."""
    table = get_dynamodb().Table(ROLE_PACKAGES_TABLE)

    packages = []
    response = table.scan()
    packages.extend(response.get("Items", []))

    while "LastEvaluatedKey" in response:
        response = table.scan(ExclusiveStartKey=response["LastEvaluatedKey"])
        packages.extend(response.get("Items", []))

    return packages
