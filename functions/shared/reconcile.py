"""
Checkout session reconciliation.

Turns a completed Stripe Checkout session into ledger and subscription
state exactly once. Both the webhook and the frontend success page call
reconcile_checkout_session; the Transaction table's key on the session id
decides which of two racing callers wins.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .activation import (
    RoleState,
    activation_fields,
    derive_state,
    grant_role_item,
    granted_role_for,
    next_state,
    role_update_item,
)
from .billing_utils import compute_total_listings, compute_units, from_minor_units
from .constants import (
    DEFAULT_CURRENCY,
    METADATA_DURATION_DAYS,
    METADATA_PACKAGE_ID,
    METADATA_RENEW_USER_ROLE_ID,
    METADATA_USER_ID,
    PAID_STATUSES,
    RENEWAL_VERIFIER,
)
from .dynamo import get_role_package, get_user, iso, utcnow
from .errors import ConflictError, NotFoundError, ValidationError
from .role_store import (
    WriteConflict,
    claim_live_role_item,
    get_transaction,
    get_user_role,
    put_role_item,
    put_transaction_item,
    transact_write,
)

logger = logging.getLogger(__name__)


class ReconcileStatus(Enum):
    CREATED = "created"
    RENEWED = "renewed"
    ALREADY_PROCESSED = "already_processed"
    PAYMENT_PENDING = "payment_pending"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    session_id: str
    user_role_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "session_id": self.session_id,
            "user_role_id": self.user_role_id,
        }


@dataclass
class SessionMetadata:
    user_id: str
    package_id: str
    duration_days: int
    renew_user_role_id: Optional[str] = None


def parse_session_metadata(session: dict) -> SessionMetadata:
    """
    Read the correlation metadata written at checkout time.

    Raises:
        ValidationError: a required key is missing or malformed
    """
    metadata = session.get("metadata") or {}
    user_id = metadata.get(METADATA_USER_ID)
    package_id = metadata.get(METADATA_PACKAGE_ID)
    raw_days = metadata.get(METADATA_DURATION_DAYS)

    if not user_id or not package_id or raw_days in (None, ""):
        raise ValidationError(
            f"Session {session.get('id')} is missing checkout metadata",
            code="missing_metadata",
        )
    try:
        duration_days = int(str(raw_days))
    except ValueError:
        raise ValidationError(f"Invalid durationDays {raw_days!r}", code="invalid_duration")

    reference = session.get("client_reference_id")
    if reference and reference != user_id:
        raise ValidationError(
            f"Session {session.get('id')} reference {reference} does not match metadata user {user_id}",
            code="metadata_mismatch",
        )

    return SessionMetadata(
        user_id=user_id,
        package_id=package_id,
        duration_days=duration_days,
        renew_user_role_id=metadata.get(METADATA_RENEW_USER_ROLE_ID) or None,
    )


def _payment_method(session: dict) -> str:
    methods = session.get("payment_method_types") or []
    return methods[0] if methods else "card"


def _resolve_conflict(session_id: str, error: WriteConflict, message: str, code: str) -> ReconcileResult:
    """A cancelled write is benign only if another caller already recorded this session."""
    existing = get_transaction(session_id)
    if existing:
        logger.info(f"Session {session_id} was reconciled concurrently")
        return ReconcileResult(ReconcileStatus.ALREADY_PROCESSED, session_id, existing.get("user_role_id"))
    raise ConflictError(message, code=code) from error


def reconcile_checkout_session(session: dict, gateway=None, now: Optional[datetime] = None) -> ReconcileResult:
    """
    Idempotently record a completed checkout session.

    Args:
        session: Checkout Session object (plain dict)
        gateway: StripeGateway used to resolve the hosted invoice URL
        now: Clock override for tests

    Returns:
        ReconcileResult. ALREADY_PROCESSED and PAYMENT_PENDING perform no writes.

    Raises:
        ValidationError / NotFoundError / ConflictError: permanent, do not retry
        TransientError / ClientError: store or gateway unavailable, retry
    """
    now = now or utcnow()
    session_id = session.get("id")
    if not session_id:
        raise ValidationError("Checkout session has no id", code="missing_session_id")

    existing = get_transaction(session_id)
    if existing:
        logger.info(f"Session {session_id} already processed, skipping")
        return ReconcileResult(ReconcileStatus.ALREADY_PROCESSED, session_id, existing.get("user_role_id"))

    payment_status = session.get("payment_status")
    if payment_status not in PAID_STATUSES:
        logger.info(f"Session {session_id} payment status is {payment_status}, waiting for settlement")
        return ReconcileResult(ReconcileStatus.PAYMENT_PENDING, session_id)

    meta = parse_session_metadata(session)

    package = get_role_package(meta.package_id)
    if package is None:
        raise NotFoundError(f"Role package {meta.package_id} not found", code="package_not_found")
    units = compute_units(meta.duration_days, package)
    total_listings = compute_total_listings(package, units)
    granted = granted_role_for(package)

    user = get_user(meta.user_id)
    if user is None:
        raise NotFoundError(f"User {meta.user_id} not found", code="user_not_found")

    amount_total = session.get("amount_total")
    if amount_total is None:
        raise ValidationError(f"Session {session_id} has no amount_total", code="missing_amount")

    invoice_url = gateway.retrieve_invoice_url(session.get("invoice")) if gateway else None
    stamp = iso(now)

    transaction = {
        "pk": session_id,
        "user_id": meta.user_id,
        "role_package_id": meta.package_id,
        "kind": "renewal" if meta.renew_user_role_id else "purchase",
        "amount": from_minor_units(amount_total),
        "currency": (session.get("currency") or DEFAULT_CURRENCY).lower(),
        "status": payment_status,
        "method": _payment_method(session),
        "duration_days": meta.duration_days,
        "invoice_url": invoice_url,
        "created_at": stamp,
    }

    if meta.renew_user_role_id:
        return _renew(session_id, meta, package, granted, total_listings, transaction, now)

    user_role_id = f"ur_{uuid.uuid4().hex}"
    role = {
        "pk": user_role_id,
        "user_id": meta.user_id,
        "role_package_id": meta.package_id,
        "duration_days": meta.duration_days,
        "total_listings": total_listings,
        "is_active": False,
        "is_paused": False,
        "is_expired": False,
        "is_verified": False,
        "renewal_count": 0,
        "created_at": stamp,
        "updated_at": stamp,
    }
    transaction["user_role_id"] = user_role_id

    try:
        transact_write([
            put_role_item(role),
            put_transaction_item(transaction),
            claim_live_role_item(meta.user_id, user_role_id, stamp),
        ])
    except WriteConflict as e:
        return _resolve_conflict(session_id, e, "User already holds a live role", "active_role_exists")

    logger.info(
        f"Created role {user_role_id} for user {meta.user_id} from session {session_id}",
        extra={
            "session_id": session_id,
            "user_role_id": user_role_id,
            "package_id": meta.package_id,
            "units": units,
            "amount": str(transaction["amount"]),
        },
    )
    return ReconcileResult(ReconcileStatus.CREATED, session_id, user_role_id)


def _renew(session_id, meta, package, granted, total_listings, transaction, now) -> ReconcileResult:
    """Re-activate an expired role in place and record the renewal payment."""
    role_id = meta.renew_user_role_id
    role = get_user_role(role_id)
    if role is None:
        raise NotFoundError(f"User role {role_id} not found", code="role_not_found")
    if role.get("user_id") != meta.user_id:
        raise ValidationError(f"User role {role_id} does not belong to user {meta.user_id}", code="role_owner_mismatch")
    if role.get("role_package_id") != meta.package_id:
        raise ValidationError(f"User role {role_id} is not for package {meta.package_id}", code="package_mismatch")

    state = derive_state(role)
    if state is not RoleState.EXPIRED:
        raise ConflictError(f"User role {role_id} is not expired", code="role_not_expired")
    next_state(state, "renew")

    fields = activation_fields(meta.duration_days, now, RENEWAL_VERIFIER)
    fields["duration_days"] = meta.duration_days
    fields["total_listings"] = total_listings
    transaction["user_role_id"] = role_id

    try:
        transact_write([
            role_update_item(
                role_id,
                fields,
                condition="is_expired = :was_expired AND user_id = :owner",
                extra_values={":was_expired": True, ":owner": meta.user_id, ":zero": 0, ":one": 1},
                extra_set=["renewal_count = if_not_exists(renewal_count, :zero) + :one"],
                remove=["expired_at"],
            ),
            put_transaction_item(transaction),
            grant_role_item(
                meta.user_id,
                role_id,
                granted,
                condition="attribute_exists(pk) AND attribute_not_exists(live_user_role_id)",
                now=fields["updated_at"],
            ),
        ])
    except WriteConflict as e:
        return _resolve_conflict(
            session_id, e, "Role is no longer expired or the user holds another live role", "renewal_conflict"
        )

    logger.info(
        f"Renewed role {role_id} for user {meta.user_id} from session {session_id}",
        extra={"session_id": session_id, "user_role_id": role_id, "renewal_count": int(role.get("renewal_count") or 0) + 1},
    )
    return ReconcileResult(ReconcileStatus.RENEWED, session_id, role_id)
