"""
Shared constants for RolePass.
"""

import os

# Reminder schedule for the expiry sweep (days before end_date)
REMINDER_THRESHOLDS = frozenset(
    int(d) for d in os.environ.get("REMINDER_THRESHOLDS", "5,2,1,0").split(",") if d.strip()
)
REMINDER_LOOKAHEAD_DAYS = int(os.environ.get("REMINDER_LOOKAHEAD_DAYS", "5"))

# Sweep scheduling (daily; reminders are claimed on the role so reruns are safe)
SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", "86400"))
SWEEP_LOCK_TTL_SECONDS = int(os.environ.get("SWEEP_LOCK_TTL_SECONDS", "900"))
SWEEP_PAGE_SIZE = 100

# Checkout
SUPPORTED_CURRENCIES = [
    c.strip().lower() for c in os.environ.get("SUPPORTED_CURRENCIES", "usd").split(",") if c.strip()
]
DEFAULT_CURRENCY = SUPPORTED_CURRENCIES[0] if SUPPORTED_CURRENCIES else "usd"

# Metadata keys written into checkout sessions. Callers may add their own
# metadata but never override these.
METADATA_USER_ID = "userId"
METADATA_PACKAGE_ID = "rolePackageId"
METADATA_DURATION_DAYS = "durationDays"
METADATA_RENEW_USER_ROLE_ID = "renewUserRoleId"
RESERVED_METADATA_KEYS = (
    METADATA_USER_ID,
    METADATA_PACKAGE_ID,
    METADATA_DURATION_DAYS,
    METADATA_RENEW_USER_ROLE_ID,
)

# Stripe payment statuses that mean the money has settled
PAID_STATUSES = ("paid", "no_payment_required")

# Stripe events routed to the reconciler
RECONCILE_EVENT_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)

# Verifier identity recorded when a renewal re-activates a role automatically
RENEWAL_VERIFIER = "system:renewal"

# Sparse GSI marker for roles the expiry sweep must look at
LIVE_STATUS_ACTIVE = "active"

# Timeouts
STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", "10"))
STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))
AWS_CONNECT_TIMEOUT = float(os.environ.get("AWS_CONNECT_TIMEOUT", "3"))
AWS_READ_TIMEOUT = float(os.environ.get("AWS_READ_TIMEOUT", "10"))

# Billing event audit retention
BILLING_EVENT_TTL_DAYS = 90

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
