"""
Role expiry and reminder sweep.

Visits every live role ending before the end of the reminder window,
sends staged reminders, and expires roles whose end_date has passed.

Only one sweep runs at a time: a non-blocking lock guards the process and
a lease item in the billing events table guards the fleet.
"""

import logging
import os
import socket
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Iterable, Optional

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import REMINDER_LOOKAHEAD_DAYS, REMINDER_THRESHOLDS, SWEEP_LOCK_TTL_SECONDS
from .dynamo import BILLING_EVENTS_TABLE, get_role_package, get_user, iso, parse_iso, utcnow
from .metrics import emit_batch_metrics
from .notifications import build_expired_email, build_reminder_email
from .role_store import (
    WriteConflict,
    claim_reminder,
    expire_role_items,
    get_user_role,
    mark_role_expired,
    query_roles_ending_before,
    release_reminder_claim,
    transact_write,
)
from .types import Role, UserRoleRecord

logger = logging.getLogger(__name__)

SWEEP_LOCK_PK = "SYSTEM#ROLE_EXPIRY_SWEEP"
SWEEP_LOCK_SK = "lock"

_sweep_lock = threading.Lock()


@dataclass
class SweepResult:
    checked: int = 0
    reminders_sent: int = 0
    expired: int = 0
    errors: int = 0
    skipped: bool = False
    aborted: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def acquire_sweep_lease(owner: str, now: datetime, ttl_seconds: int = SWEEP_LOCK_TTL_SECONDS) -> bool:
    """
    Take the fleet-wide sweep lease.

    Succeeds when no lease exists or the current one has lapsed, so a
    crashed holder blocks sweeps for at most ttl_seconds.
    """
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    now_ts = int(now.timestamp())
    try:
        table.put_item(
            Item={
                "pk": SWEEP_LOCK_PK,
                "sk": SWEEP_LOCK_SK,
                "owner": owner,
                "acquired_at": iso(now),
                "lease_expires_at": now_ts + ttl_seconds,
                "ttl": now_ts + ttl_seconds + 86400,
            },
            ConditionExpression="attribute_not_exists(pk) OR lease_expires_at < :now",
            ExpressionAttributeValues={":now": now_ts},
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise


def release_sweep_lease(owner: str) -> None:
    """Drop the lease if this owner still holds it (best-effort)."""
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    try:
        table.delete_item(
            Key={"pk": SWEEP_LOCK_PK, "sk": SWEEP_LOCK_SK},
            ConditionExpression="#owner = :owner",
            ExpressionAttributeNames={"#owner": "owner"},
            ExpressionAttributeValues={":owner": owner},
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(f"Sweep lease was taken over before release by {owner}")
            return
        logger.error(f"Failed to release sweep lease: {e}")


def days_remaining(end_date: datetime, now: datetime) -> int:
    """Whole UTC calendar days from today until end_date (negative once passed)."""
    return (end_date.astimezone(timezone.utc).date() - now.astimezone(timezone.utc).date()).days


def expire_role(role: UserRoleRecord, now: datetime) -> bool:
    """
    Flip one role to expired and restore its user's previous role.

    Returns:
        True if this call expired the role, False if it was already expired
    """
    stamp = iso(now)
    try:
        transact_write(expire_role_items(role, Role.USER.value, stamp))
        return True
    except WriteConflict:
        current = get_user_role(role["pk"])
        if current is None or current.get("is_expired"):
            logger.info(f"Role {role['pk']} already expired, skipping")
            return False

    # The user's live pointer no longer references this role; expire it alone
    logger.warning(
        f"User {role.get('user_id')} live role pointer does not reference {role['pk']}, expiring role only",
        extra={"user_role_id": role["pk"], "user_id": role.get("user_id")},
    )
    return mark_role_expired(role["pk"], stamp)


class _Lookups:
    """Per-sweep cache of users and packages."""

    def __init__(self):
        self._users = {}
        self._packages = {}

    def user(self, user_id: str) -> dict:
        if user_id not in self._users:
            self._users[user_id] = get_user(user_id) or {}
        return self._users[user_id]

    def package_name(self, package_id: str) -> str:
        if package_id not in self._packages:
            package = get_role_package(package_id) or {}
            self._packages[package_id] = package.get("name") or package_id
        return self._packages[package_id]


def _notify(notifier, lookups: _Lookups, role: UserRoleRecord, subject_and_body: Callable) -> bool:
    user = lookups.user(role["user_id"])
    email = user.get("email")
    if not email:
        logger.warning(f"User {role['user_id']} has no email, cannot notify about role {role['pk']}")
        return False
    subject, body = subject_and_body(user.get("username"), lookups.package_name(role.get("role_package_id")))
    notifier.send(email, subject, body)
    return True


def _sweep(
    notifier,
    now: datetime,
    should_stop: Optional[Callable[[], bool]],
    lookahead_days: int,
    thresholds: Iterable[int],
    result: SweepResult,
) -> None:
    thresholds = frozenset(thresholds)
    start_of_today = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    cutoff = start_of_today + timedelta(days=lookahead_days + 1)
    lookups = _Lookups()

    for role in query_roles_ending_before(cutoff):
        if should_stop is not None and should_stop():
            logger.info(f"Expiry sweep stopping early after {result.checked} roles")
            result.aborted = True
            return

        result.checked += 1
        role_id = role["pk"]
        try:
            end_date = parse_iso(role["end_date"])
            remaining = days_remaining(end_date, now)

            if remaining < 0:
                if expire_role(role, now):
                    result.expired += 1
                    logger.info(f"Expired role {role_id}", extra={"user_role_id": role_id, "user_id": role["user_id"]})
                    _notify(notifier, lookups, role, build_expired_email)
            elif remaining in thresholds:
                # One reminder per threshold crossing, across sweeps
                if not claim_reminder(role_id, remaining, role["end_date"], iso(now)):
                    continue
                try:
                    sent = _notify(
                        notifier,
                        lookups,
                        role,
                        lambda username, package_name: build_reminder_email(
                            username, package_name, remaining, end_date
                        ),
                    )
                except Exception:
                    release_reminder_claim(role_id, remaining, role["end_date"])
                    raise
                if sent:
                    result.reminders_sent += 1
                    logger.info(
                        f"Sent {remaining}-day reminder for role {role_id}",
                        extra={"user_role_id": role_id, "days_remaining": remaining},
                    )
        except Exception as e:
            result.errors += 1
            logger.error(f"Error processing role {role_id}: {e}", extra={"user_role_id": role_id})


def run_expiry_sweep(
    notifier,
    now: Optional[datetime] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    lookahead_days: int = REMINDER_LOOKAHEAD_DAYS,
    thresholds: Iterable[int] = REMINDER_THRESHOLDS,
) -> SweepResult:
    """
    Send due reminders and expire lapsed roles.

    Args:
        notifier: NotificationSender (or anything with send(to, subject, html))
        now: Clock override
        should_stop: Polled between roles; a True result ends the sweep early
        lookahead_days: Size of the reminder window
        thresholds: days_remaining values that trigger a reminder

    Returns:
        SweepResult. skipped=True when another sweep holds a lock.
    """
    now = now or utcnow()
    result = SweepResult()

    if not _sweep_lock.acquire(blocking=False):
        logger.warning("Expiry sweep already running in this process, skipping")
        result.skipped = True
        return result

    try:
        owner = _lease_owner()
        if not acquire_sweep_lease(owner, now):
            logger.info("Expiry sweep lease held elsewhere, skipping")
            result.skipped = True
            return result
        try:
            _sweep(notifier, now, should_stop, lookahead_days, thresholds, result)
        finally:
            release_sweep_lease(owner)
    finally:
        _sweep_lock.release()

    logger.info(
        f"Expiry sweep complete: {result.checked} checked, {result.reminders_sent} reminders, "
        f"{result.expired} expired, {result.errors} errors",
        extra=result.to_dict(),
    )
    emit_batch_metrics([
        {"metric_name": "RoleRemindersSent", "value": result.reminders_sent},
        {"metric_name": "RolesExpired", "value": result.expired},
        {"metric_name": "RoleSweepErrors", "value": result.errors},
    ])
    return result
