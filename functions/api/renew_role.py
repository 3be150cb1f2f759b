"""
Renew Role Endpoint - POST /roles/renew

Creates a Stripe Checkout session that renews one of the caller's expired
roles in place. The role is re-activated when the payment is reconciled.
"""

import logging

import stripe
from botocore.exceptions import ClientError

from shared.checkout import create_renewal_checkout
from shared.errors import APIError, BillingError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.payment_gateway import get_gateway
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import error_response, success_response
from shared.session_auth import authenticate

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for POST /roles/renew.

    Request body:
    {
        "userRoleId": "ur_...",
        "durationDays": 30,   (optional, defaults to the role's last duration)
        "currency": "usd"     (optional)
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    gateway = get_gateway()
    if gateway is None:
        logger.error("Stripe API key not configured")
        return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

    try:
        session = authenticate(event)
        body = parse_json_body(event)
    except APIError as e:
        return e.to_response(origin)

    user_role_id = body.get("userRoleId")
    if not user_role_id:
        return error_response(400, "missing_fields", "userRoleId is required", origin=origin)

    try:
        checkout = create_renewal_checkout(
            gateway,
            session["user_id"],
            user_role_id,
            duration_days=body.get("durationDays"),
            currency=body.get("currency"),
        )
    except BillingError as e:
        return e.to_api_error().to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating renewal session: {e}")
        return error_response(500, "stripe_error", "Failed to create checkout session", origin=origin)
    except ClientError as e:
        logger.error(f"Store error creating renewal session: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    logger.info(f"Renewal checkout created for role {user_role_id}")
    return success_response(checkout, origin=origin)
