"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies Stripe-signed webhook deliveries and reconciles completed checkout
sessions into role and transaction records.
Uses Stripe signature verification instead of session auth.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import BILLING_EVENT_TTL_DAYS, RECONCILE_EVENT_TYPES
from shared.dynamo import BILLING_EVENTS_TABLE
from shared.errors import InvalidRequestError, PermanentError, TransientError, VerificationError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_webhook_metric
from shared.payment_gateway import TRANSIENT_STRIPE_ERRORS, get_gateway
from shared.reconcile import reconcile_checkout_session
from shared.request_utils import get_header, get_raw_body
from shared.response_utils import error_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _ack(body: dict) -> dict:
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


# ===========================================
# Billing Event Audit Trail
# ===========================================


def _check_and_claim_event(event_id: str, event_type: str) -> bool:
    """Atomically check if event exists and claim it if not.

    Returns:
        True if successfully claimed (should process)
        False if already exists (duplicate - skip processing)
    """
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    now = datetime.now(timezone.utc)
    try:
        table.put_item(
            Item={
                "pk": event_id,
                "sk": event_type,
                "status": "processing",
                "processed_at": now.isoformat(),
                "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
            },
            ConditionExpression="attribute_not_exists(pk)",
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise


def _release_event_claim(event_id: str, event_type: str):
    """Release event claim so Stripe retries can re-process.

    Called when a transient error occurs after claiming an event.
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        table.delete_item(Key={"pk": event_id, "sk": event_type})
        logger.info(f"Released event claim for {event_id} to allow retry")
    except Exception as e:
        # Best-effort - log but don't fail the webhook response
        logger.error(f"Failed to release event claim {event_id}: {e}")


def _record_billing_event(event: dict, status: str, error: str = None, result: dict = None):
    """Record webhook event for audit trail (best-effort).

    Args:
        event: Verified Stripe event envelope
        status: "success" or "failed"
        error: Error message if status is "failed"
        result: Reconciliation outcome, if any
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        now = datetime.now(timezone.utc)
        session = event.get("data", {}).get("object", {})
        item = {
            "pk": event["id"],
            "sk": event["type"],
            "session_id": session.get("id") or "unknown",
            "processed_at": now.isoformat(),
            "event_created_at": event.get("created"),
            "livemode": event.get("livemode"),
            "status": status,
            "error": error,
            "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
        }
        if result:
            item["result"] = result.get("status")
            item["user_role_id"] = result.get("user_role_id")
        table.put_item(Item={k: v for k, v in item.items() if v is not None})
    except Exception as e:
        # Best-effort - audit recording should not block webhook response
        logger.error(f"Failed to record billing event {event.get('id')}: {e}")


def _transient_failure(stripe_event: dict, code: str, message: str) -> dict:
    # No audit row: it shares the claim key and would block the redelivery
    _release_event_claim(stripe_event["id"], stripe_event["type"])
    emit_webhook_metric(stripe_event["type"], "transient_failure")
    return error_response(500, code, message)


def _permanent_failure(stripe_event: dict, error: Exception, code: str, message: str) -> dict:
    # Acknowledged so Stripe stops redelivering; needs manual review
    _record_billing_event(stripe_event, "failed", str(error))
    emit_webhook_metric(stripe_event["type"], "permanent_failure")
    return _ack({"error": {"code": code, "message": message}, "received": True, "processed": False})


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: record the purchase or renewal
    - checkout.session.async_payment_succeeded: same, for delayed payment methods
    Every other event type is acknowledged without side effects.
    """
    configure_structured_logging()
    set_request_id(event)

    gateway = get_gateway()
    if gateway is None or not gateway.can_verify_webhooks:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    sig_header = get_header(event, "stripe-signature")
    if not sig_header:
        logger.warning("Missing Stripe signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    try:
        payload = get_raw_body(event)
    except InvalidRequestError as e:
        logger.warning(f"Rejected webhook: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    try:
        stripe_event = gateway.verify_webhook(payload, sig_header)
    except VerificationError as e:
        logger.warning(f"Rejected webhook: {e}")
        message = "Invalid signature" if e.code == "invalid_signature" else "Invalid webhook payload"
        return error_response(400, e.code, message)

    event_type = stripe_event["type"]
    session = stripe_event["data"]["object"]

    logger.info(f"Processing Stripe event: {event_type} (id={stripe_event['id']})")

    if event_type not in RECONCILE_EVENT_TYPES:
        logger.info(f"Ignoring event type: {event_type}")
        emit_webhook_metric(event_type, "ignored")
        return _ack({"received": True})

    # Check for duplicate event and atomically claim it
    try:
        claimed = _check_and_claim_event(stripe_event["id"], event_type)
    except ClientError as e:
        logger.error(f"Could not claim event {stripe_event['id']}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")
    if not claimed:
        logger.info(f"Skipping duplicate event {stripe_event['id']}")
        emit_webhook_metric(event_type, "duplicate")
        return _ack({"received": True, "duplicate": True})

    try:
        result = reconcile_checkout_session(session, gateway=gateway).to_dict()

    except (ClientError, TransientError) as e:
        logger.error(f"Transient error handling {event_type}: {e}")
        return _transient_failure(stripe_event, "temporary_error", "Temporary error, please retry")
    except TRANSIENT_STRIPE_ERRORS as e:
        logger.error(f"Transient Stripe error handling {event_type}: {e}")
        return _transient_failure(stripe_event, "stripe_error", "Stripe error, please retry")
    except PermanentError as e:
        logger.error(
            f"Permanent error handling {event_type}: {e}",
            extra={"event_id": stripe_event["id"], "session_id": session.get("id"), "error_code": e.code},
        )
        return _permanent_failure(stripe_event, e, e.code, e.message)
    except stripe.StripeError as e:
        logger.error(f"Permanent Stripe error handling {event_type}: {e}")
        return _permanent_failure(stripe_event, e, "stripe_validation_error", "Stripe validation error")
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Don't leak internal field names in response
        logger.error(f"Permanent error handling {event_type}: {e}")
        return _permanent_failure(stripe_event, e, "invalid_event_data", "Invalid event data")
    except Exception as e:
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return _transient_failure(stripe_event, "processing_failed", "Processing failed")

    _record_billing_event(stripe_event, "success", result=result)
    emit_webhook_metric(event_type, "processed")
    logger.info(f"Reconciled session {session.get('id')}: {result['status']}")
    return _ack({"received": True, "processed": True, "status": result["status"]})
