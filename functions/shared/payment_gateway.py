"""
Stripe gateway client.

Thin wrapper over the stripe library covering the four operations the
billing engine needs: create a checkout session, retrieve a session,
retrieve an invoice URL, and verify webhook signatures. Network calls use a
bounded timeout, and connection/rate-limit/API errors surface as
TransientError so callers can decide to retry.
"""

import json
import logging
import time
from typing import Any, Optional

import stripe

from shared.billing_utils import get_stripe_secrets
from shared.constants import STRIPE_MAX_NETWORK_RETRIES, STRIPE_TIMEOUT_SECONDS
from shared.errors import TransientError, VerificationError
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

_http_client_configured = False


def _configure_http_client(timeout: float) -> None:
    global _http_client_configured
    if _http_client_configured:
        return
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
    _http_client_configured = True


def as_plain_dict(obj: Any) -> dict:
    """Convert a StripeObject (or plain dict) into plain nested dicts."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class StripeGateway:
    """Payment gateway client bound to one API key and webhook secret."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        timeout: float = STRIPE_TIMEOUT_SECONDS,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        _configure_http_client(timeout)

    @property
    def can_verify_webhooks(self) -> bool:
        return bool(self._webhook_secret)

    def _call(self, operation: str, func, *args, **kwargs):
        started = time.monotonic()
        try:
            result = func(*args, api_key=self._api_key, **kwargs)
        except TRANSIENT_STRIPE_ERRORS as e:
            log_external_call(logger, "stripe", operation, False, (time.monotonic() - started) * 1000, str(e))
            raise TransientError(f"Stripe {operation} failed: {e}", code="stripe_unavailable") from e
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", operation, False, (time.monotonic() - started) * 1000, str(e))
            raise
        log_external_call(logger, "stripe", operation, True, (time.monotonic() - started) * 1000)
        return result

    def create_checkout_session(self, params: dict) -> dict:
        session = self._call("checkout.Session.create", stripe.checkout.Session.create, **params)
        return as_plain_dict(session)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        session = self._call("checkout.Session.retrieve", stripe.checkout.Session.retrieve, session_id)
        return as_plain_dict(session)

    def retrieve_invoice_url(self, invoice_id: Optional[str]) -> Optional[str]:
        """Hosted invoice URL for a session's invoice, or None.

        A permanent lookup failure (deleted invoice, bad id) is logged and
        treated as "no invoice"; transient failures propagate.
        """
        if not invoice_id:
            return None
        if isinstance(invoice_id, dict):
            return invoice_id.get("hosted_invoice_url")
        try:
            invoice = self._call("Invoice.retrieve", stripe.Invoice.retrieve, invoice_id)
        except TransientError:
            raise
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve invoice {invoice_id}: {e}")
            return None
        return as_plain_dict(invoice).get("hosted_invoice_url")

    def verify_webhook(self, payload: str, sig_header: str) -> dict:
        """Verify the Stripe-Signature header over the raw payload and parse it.

        Raises:
            VerificationError: secret missing, signature mismatch, or the
                signed payload is not a well-formed event envelope
        """
        if not self._webhook_secret:
            raise VerificationError("Webhook secret not configured", code="stripe_not_configured")

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self._webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise VerificationError(f"Invalid signature: {e}", code="invalid_signature") from e

        try:
            envelope = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise VerificationError("Invalid webhook payload", code="invalid_webhook_payload") from e

        if (
            not isinstance(envelope, dict)
            or not envelope.get("id")
            or not envelope.get("type")
            or not isinstance((envelope.get("data") or {}).get("object"), dict)
        ):
            raise VerificationError("Invalid webhook payload", code="invalid_webhook_payload")
        return envelope


def get_gateway() -> Optional[StripeGateway]:
    """Build a gateway from the cached Stripe secrets, or None if unconfigured."""
    api_key, webhook_secret = get_stripe_secrets()
    if not api_key:
        return None
    return StripeGateway(api_key, webhook_secret)
