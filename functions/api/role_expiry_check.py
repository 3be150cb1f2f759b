"""
Role Expiry Check - Scheduled Lambda

Triggered daily by EventBridge. Sends reminders for roles nearing their
end date and expires roles whose end date has passed.
"""

import logging

from shared.logging_utils import configure_structured_logging, set_request_id
from shared.notifications import NotificationSender
from shared.role_expiry import run_expiry_sweep

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Built once per container and reused across invocations
_notifier = None


def _get_notifier() -> NotificationSender:
    global _notifier
    if _notifier is None:
        _notifier = NotificationSender.from_env()
    return _notifier


def _remaining_time_check(context):
    """Stop between roles when fewer than 30 seconds of Lambda time remain."""
    if context is None or not hasattr(context, "get_remaining_time_in_millis"):
        return None
    return lambda: context.get_remaining_time_in_millis() < 30000


def handler(event, context):
    """
    Returns:
        {"statusCode": 200, "checked", "reminders_sent", "expired", "errors", "skipped", "aborted"}
    """
    configure_structured_logging()
    set_request_id(event)

    result = run_expiry_sweep(_get_notifier(), should_stop=_remaining_time_check(context))

    if result.aborted:
        logger.warning("Expiry sweep ran out of time; the next run will pick up the remainder")

    return {"statusCode": 200, **result.to_dict()}
