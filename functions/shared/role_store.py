"""
UserRole and Transaction persistence.

Multi-item writes go through TransactWriteItems on the resource's client,
which accepts native Python values (str, bool, Decimal) the same way
Table.put_item does.
"""

import logging
from datetime import datetime
from typing import Iterator, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import LIVE_STATUS_ACTIVE, SWEEP_PAGE_SIZE, THROTTLING_ERRORS
from .dynamo import (
    TRANSACTIONS_TABLE,
    USER_ROLES_TABLE,
    USERS_TABLE,
    get_item_with_retry,
    iso,
)
from .errors import TransientError
from .types import TransactionRecord, UserRoleRecord

logger = logging.getLogger(__name__)


class WriteConflict(Exception):
    """A conditional write or transaction was rejected by its conditions."""

    def __init__(self, message: str, reasons: Optional[list] = None):
        self.reasons = reasons or []
        super().__init__(message)


def get_user_role(user_role_id: str) -> Optional[UserRoleRecord]:
    if not user_role_id:
        return None
    return get_item_with_retry(USER_ROLES_TABLE, {"pk": user_role_id})


def get_transaction(session_id: str) -> Optional[TransactionRecord]:
    if not session_id:
        return None
    return get_item_with_retry(TRANSACTIONS_TABLE, {"pk": session_id})


def list_user_roles(user_id: str) -> list[UserRoleRecord]:
    """All roles a user has held, newest first."""
    table = get_dynamodb().Table(USER_ROLES_TABLE)

    roles = []
    kwargs = {
        "IndexName": "user-index",
        "KeyConditionExpression": Key("user_id").eq(user_id),
        "ScanIndexForward": False,
    }
    response = table.query(**kwargs)
    roles.extend(response.get("Items", []))

    while "LastEvaluatedKey" in response:
        response = table.query(ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs)
        roles.extend(response.get("Items", []))

    return roles


def list_transactions_for_role(user_role_id: str) -> list[TransactionRecord]:
    """Ledger rows for one role, oldest first."""
    table = get_dynamodb().Table(TRANSACTIONS_TABLE)

    rows = []
    kwargs = {
        "IndexName": "user-role-index",
        "KeyConditionExpression": Key("user_role_id").eq(user_role_id),
    }
    response = table.query(**kwargs)
    rows.extend(response.get("Items", []))

    while "LastEvaluatedKey" in response:
        response = table.query(ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs)
        rows.extend(response.get("Items", []))

    return rows


def query_roles_ending_before(cutoff: datetime, page_size: int = SWEEP_PAGE_SIZE) -> Iterator[UserRoleRecord]:
    """
    Yield live roles whose end_date falls before cutoff.

    Reads the sparse expiry-index, so only roles still carrying
    live_status are visited. Pages are fetched lazily.
    """
    table = get_dynamodb().Table(USER_ROLES_TABLE)

    kwargs = {
        "IndexName": "expiry-index",
        "KeyConditionExpression": Key("live_status").eq(LIVE_STATUS_ACTIVE) & Key("end_date").lt(iso(cutoff)),
        "FilterExpression": Attr("is_expired").eq(False) & Attr("is_active").eq(True),
        "Limit": page_size,
    }
    response = table.query(**kwargs)
    yield from response.get("Items", [])

    while "LastEvaluatedKey" in response:
        response = table.query(ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs)
        yield from response.get("Items", [])


def transact_write(items: list[dict]) -> None:
    """
    Run TransactWriteItems.

    Raises:
        WriteConflict: a condition failed (CancellationReasons attached)
        TransientError: throttled or conflicting with another transaction
        ClientError: any other store failure
    """
    try:
        get_dynamodb().meta.client.transact_write_items(TransactItems=items)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "")
        if error_code != "TransactionCanceledException":
            raise
        reasons = e.response.get("CancellationReasons", [])
        codes = [r.get("Code") for r in reasons]
        if "ConditionalCheckFailed" in codes:
            raise WriteConflict(f"Transaction conditions failed: {codes}", reasons) from e
        if "TransactionConflict" in codes or any(c in THROTTLING_ERRORS for c in codes):
            raise TransientError(f"Transaction contended: {codes}", code="store_busy") from e
        # Reasons are not always populated (older endpoints, local stacks)
        raise WriteConflict(f"Transaction cancelled: {e}", reasons) from e


def put_role_item(item: UserRoleRecord) -> dict:
    return {
        "Put": {
            "TableName": USER_ROLES_TABLE,
            "Item": item,
            "ConditionExpression": "attribute_not_exists(pk)",
        }
    }


def put_transaction_item(item: TransactionRecord) -> dict:
    return {
        "Put": {
            "TableName": TRANSACTIONS_TABLE,
            "Item": {k: v for k, v in item.items() if v is not None and v != ""},
            "ConditionExpression": "attribute_not_exists(pk)",
        }
    }


def claim_live_role_item(user_id: str, user_role_id: str, now: str) -> dict:
    """Point the user's live_user_role_id at a newly created role."""
    return {
        "Update": {
            "TableName": USERS_TABLE,
            "Key": {"pk": user_id},
            "UpdateExpression": "SET live_user_role_id = :rid, updated_at = :now",
            "ConditionExpression": "attribute_exists(pk) AND attribute_not_exists(live_user_role_id)",
            "ExpressionAttributeValues": {":rid": user_role_id, ":now": now},
        }
    }


def expire_role_items(role: UserRoleRecord, base_role: str, now: str) -> list[dict]:
    """Flip a role to expired and hand the user back their previous role."""
    return [
        {
            "Update": {
                "TableName": USER_ROLES_TABLE,
                "Key": {"pk": role["pk"]},
                "UpdateExpression": (
                    "SET is_expired = :t, is_active = :f, is_paused = :f, "
                    "expired_at = :now, updated_at = :now REMOVE live_status"
                ),
                "ConditionExpression": "is_expired = :f",
                "ExpressionAttributeValues": {":t": True, ":f": False, ":now": now},
            }
        },
        {
            "Update": {
                "TableName": USERS_TABLE,
                "Key": {"pk": role["user_id"]},
                "UpdateExpression": (
                    "SET #role = if_not_exists(previous_role, :base), updated_at = :now "
                    "REMOVE live_user_role_id, previous_role"
                ),
                "ConditionExpression": "live_user_role_id = :rid",
                "ExpressionAttributeNames": {"#role": "role"},
                "ExpressionAttributeValues": {":base": base_role, ":rid": role["pk"], ":now": now},
            }
        },
    ]


def mark_role_expired(user_role_id: str, now: str) -> bool:
    """
    Expire a role without touching its user.

    Used when the user's live pointer no longer references this role.

    Returns:
        True if this call flipped the flag, False if it was already expired
    """
    table = get_dynamodb().Table(USER_ROLES_TABLE)
    try:
        table.update_item(
            Key={"pk": user_role_id},
            UpdateExpression=(
                "SET is_expired = :t, is_active = :f, is_paused = :f, "
                "expired_at = :now, updated_at = :now REMOVE live_status"
            ),
            ConditionExpression="attribute_exists(pk) AND is_expired = :f",
            ExpressionAttributeValues={":t": True, ":f": False, ":now": now},
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise


def claim_reminder(user_role_id: str, days: int, end_date: str, now: str) -> bool:
    """
    Record that the days-remaining reminder for this end_date is being sent.

    The claim is keyed on end_date, so a renewed role starts a fresh schedule.

    Returns:
        True if claimed, False if this reminder was already sent
    """
    table = get_dynamodb().Table(USER_ROLES_TABLE)
    try:
        table.update_item(
            Key={"pk": user_role_id},
            UpdateExpression="SET last_reminder_days = :d, last_reminder_for = :end, last_reminder_at = :now",
            ConditionExpression=(
                "attribute_exists(pk) AND (attribute_not_exists(last_reminder_for) "
                "OR last_reminder_for <> :end OR last_reminder_days <> :d)"
            ),
            ExpressionAttributeValues={":d": days, ":end": end_date, ":now": now},
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise


def release_reminder_claim(user_role_id: str, days: int, end_date: str) -> None:
    """Drop a reminder claim after a failed send so the next sweep retries (best-effort)."""
    table = get_dynamodb().Table(USER_ROLES_TABLE)
    try:
        table.update_item(
            Key={"pk": user_role_id},
            UpdateExpression="REMOVE last_reminder_days, last_reminder_for, last_reminder_at",
            ConditionExpression="last_reminder_for = :end AND last_reminder_days = :d",
            ExpressionAttributeValues={":d": days, ":end": end_date},
        )
    except ClientError as e:
        logger.error(f"Failed to release reminder claim on {user_role_id}: {e}")


def set_paused_flag(user_role_id: str, paused: bool, now: str) -> None:
    """
    Set or clear is_paused on an active, unexpired role.

    Raises:
        WriteConflict: role missing, expired, inactive, or already in that state
    """
    table = get_dynamodb().Table(USER_ROLES_TABLE)
    try:
        table.update_item(
            Key={"pk": user_role_id},
            UpdateExpression="SET is_paused = :p, updated_at = :now",
            ConditionExpression="attribute_exists(pk) AND is_active = :t AND is_expired = :f AND is_paused = :cur",
            ExpressionAttributeValues={
                ":p": paused,
                ":cur": not paused,
                ":t": True,
                ":f": False,
                ":now": now,
            },
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            raise WriteConflict(f"Role {user_role_id} cannot be {'paused' if paused else 'resumed'}") from e
        raise
