"""
Outbound notification sender (SES).

A NotificationSender is constructed once at process start (Lambda cold
start or worker boot) and passed to every caller that sends mail. The
expiry sweep treats a send failure as a per-item error.
"""

import html
import logging
import os
import time
from datetime import datetime
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from shared.aws_clients import get_ses
from shared.errors import TransientError
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

NOTIFICATION_SENDER = os.environ.get("NOTIFICATION_SENDER", "noreply@rolepass.app")
BASE_URL = os.environ.get("BASE_URL", "https://rolepass.app")
BRAND_NAME = os.environ.get("BRAND_NAME", "RolePass")


class NotificationSender:
    """Sends subject + HTML body emails through SES."""

    def __init__(self, sender: str = NOTIFICATION_SENDER, ses_client=None):
        self.sender = sender
        self._ses = ses_client
        self._closed = False

    @classmethod
    def from_env(cls) -> "NotificationSender":
        return cls(sender=os.environ.get("NOTIFICATION_SENDER", NOTIFICATION_SENDER))

    @property
    def client(self):
        if self._ses is None:
            self._ses = get_ses()
        return self._ses

    def send(self, to: str, subject: str, body_html: str) -> str:
        """Send one email and return the SES message id.

        Raises:
            TransientError: SES rejected or could not be reached
        """
        if self._closed:
            raise RuntimeError("NotificationSender is closed")

        started = time.monotonic()
        try:
            response = self.client.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {"Html": {"Data": body_html, "Charset": "UTF-8"}},
                },
            )
        except (ClientError, BotoCoreError) as e:
            log_external_call(logger, "ses", "send_email", False, (time.monotonic() - started) * 1000, str(e))
            raise TransientError(f"Failed to send email: {e}", code="notification_failed") from e

        log_external_call(logger, "ses", "send_email", True, (time.monotonic() - started) * 1000)
        return response.get("MessageId", "")

    def close(self) -> None:
        self._closed = True
        self._ses = None


def _days_phrase(days: int) -> str:
    if days == 0:
        return "today"
    return f"in {days} day{'s' if days != 1 else ''}"


def _wrap(title: str, paragraphs: list[str]) -> str:
    body = "".join(f'<p style="color:#475569;font-size:16px;">{p}</p>' for p in paragraphs)
    return (
        '<html><body style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto;padding:20px;">'
        f'<h2 style="color:#4C924D;">{html.escape(title)}</h2>'
        f"{body}"
        f'<p style="margin-top:24px;">Thanks,<br><strong>The {html.escape(BRAND_NAME)} Team</strong></p>'
        "</body></html>"
    )


def build_reminder_email(
    username: Optional[str],
    package_name: str,
    days_remaining: int,
    end_date: datetime,
) -> tuple[str, str]:
    """Subject and HTML for an upcoming-expiry reminder."""
    phrase = _days_phrase(days_remaining)
    subject = f"Your {package_name} role expires {phrase}"
    body = _wrap(
        "Your Role is Expiring Soon",
        [
            f"Dear {html.escape(username or 'User')},",
            f"Your <strong>{html.escape(package_name)}</strong> role expires <strong>{phrase}</strong>, "
            f"on <strong>{end_date.strftime('%a %b %d %Y')}</strong>.",
            "Please renew your role to continue enjoying our services without interruption.",
            f'<a href="{BASE_URL}/renew-role">Renew Now</a>',
        ],
    )
    return subject, body


def build_expired_email(username: Optional[str], package_name: str) -> tuple[str, str]:
    """Subject and HTML for the expired notice."""
    subject = f"Your {package_name} role has expired"
    body = _wrap(
        "Your Role Has Expired",
        [
            f"Dear {html.escape(username or 'User')},",
            f"Your <strong>{html.escape(package_name)}</strong> role has expired.",
            "You can renew it anytime from your profile.",
            f'<a href="{BASE_URL}/renew-role">Renew Role</a>',
        ],
    )
    return subject, body
