"""
Create Checkout Session Endpoint - POST /checkout/create

Creates a Stripe Checkout session for a role package purchase.
Requires session authentication (logged-in user).
"""

import logging

import stripe
from botocore.exceptions import ClientError

from shared.checkout import create_role_checkout
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
    Lambda handler for POST /checkout/create.

    Request body:
    {
        "packageId": "agent-monthly",
        "durationDays": 60,
        "currency": "usd",          (optional)
        "metadata": {...}           (optional)
    }

    Returns:
    {
        "checkout_url": "https://checkout.stripe.com/...",
        "session_id": "cs_...",
        "amount": 200,
        "currency": "usd"
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

    package_id = body.get("packageId")
    duration_days = body.get("durationDays")
    if not package_id or duration_days is None:
        return error_response(
            400, "missing_fields", "packageId and durationDays are required", origin=origin
        )

    try:
        checkout = create_role_checkout(
            gateway,
            session["user_id"],
            package_id,
            duration_days,
            currency=body.get("currency"),
            extra_metadata=body.get("metadata"),
        )
    except BillingError as e:
        if e.retryable:
            logger.error(f"Transient error creating checkout session: {e}")
        return e.to_api_error().to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        return error_response(500, "stripe_error", "Failed to create checkout session", origin=origin)
    except ClientError as e:
        logger.error(f"Store error creating checkout session: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)
    except Exception as e:
        logger.error(f"Error creating checkout session: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    return success_response(checkout, origin=origin)
