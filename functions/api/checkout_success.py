"""
Checkout Success Endpoint - GET /checkout/success?session_id=cs_...

Called by the payment-success page after Stripe redirects back. Reconciles
the session immediately so the user does not wait for the webhook; the
webhook arriving later resolves to already_processed.
"""

import logging

import stripe
from botocore.exceptions import ClientError

from shared.constants import METADATA_USER_ID
from shared.errors import APIError, BillingError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.payment_gateway import TRANSIENT_STRIPE_ERRORS, get_gateway
from shared.reconcile import ReconcileStatus, reconcile_checkout_session
from shared.request_utils import get_origin, get_query_param
from shared.response_utils import error_response, success_response
from shared.session_auth import authenticate

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    gateway = get_gateway()
    if gateway is None:
        logger.error("Stripe API key not configured")
        return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

    try:
        user_session = authenticate(event)
    except APIError as e:
        return e.to_response(origin)

    session_id = get_query_param(event, "session_id")
    if not session_id or not session_id.startswith("cs_"):
        return error_response(400, "invalid_session_id", "A valid session_id is required", origin=origin)

    try:
        checkout_session = gateway.retrieve_checkout_session(session_id)

        owner = (checkout_session.get("metadata") or {}).get(METADATA_USER_ID)
        if owner != user_session["user_id"]:
            logger.warning(f"User {user_session['user_id']} tried to confirm session {session_id} owned by {owner}")
            return error_response(403, "forbidden", "This checkout session belongs to another user", origin=origin)

        result = reconcile_checkout_session(checkout_session, gateway=gateway)

    except BillingError as e:
        if e.retryable:
            logger.error(f"Transient error confirming session {session_id}: {e}")
        else:
            logger.error(f"Could not reconcile session {session_id}: {e}")
        return e.to_api_error().to_response(origin)
    except TRANSIENT_STRIPE_ERRORS as e:
        logger.error(f"Stripe unavailable confirming session {session_id}: {e}")
        return error_response(503, "stripe_unavailable", "Payment provider unavailable, please retry", origin=origin)
    except stripe.InvalidRequestError as e:
        logger.warning(f"Unknown checkout session {session_id}: {e}")
        return error_response(404, "session_not_found", "Checkout session not found", origin=origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error confirming session {session_id}: {e}")
        return error_response(500, "stripe_error", "Failed to confirm checkout session", origin=origin)
    except ClientError as e:
        logger.error(f"Store error confirming session {session_id}: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    status_code = 202 if result.status is ReconcileStatus.PAYMENT_PENDING else 200
    return success_response(result.to_dict(), status_code=status_code, origin=origin)
