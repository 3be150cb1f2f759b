"""
Session cookie authentication.

Sessions are issued by the login service as a signed cookie
(`session=<base64 payload>.<hmac-sha256 hex>`). This module only verifies
them; it never issues sessions to end users.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timezone
from http.cookies import CookieError, SimpleCookie
from typing import Optional

from botocore.exceptions import ClientError

from .aws_clients import get_secretsmanager
from .dynamo import get_user
from .errors import ForbiddenError, UnauthorizedError
from .request_utils import get_header
from .types import Role, UserRecord

logger = logging.getLogger(__name__)

# Cached session secret (loaded from Secrets Manager) with TTL
_session_secret_cache = None
_session_secret_cache_time = 0.0
SESSION_SECRET_CACHE_TTL = 300  # 5 minutes - allows secret rotation to take effect


def _get_session_secret() -> str:
    """Retrieve session secret from Secrets Manager (cached with TTL)."""
    global _session_secret_cache, _session_secret_cache_time

    if _session_secret_cache and (time.time() - _session_secret_cache_time) < SESSION_SECRET_CACHE_TTL:
        return _session_secret_cache

    # Read at runtime to allow tests to set this env var
    session_secret_arn = os.environ.get("SESSION_SECRET_ARN")
    if not session_secret_arn:
        logger.error("SESSION_SECRET_ARN not configured")
        return ""

    try:
        response = get_secretsmanager().get_secret_value(SecretId=session_secret_arn)
        secret_string = response["SecretString"]

        try:
            secret_data = json.loads(secret_string)
            _session_secret_cache = secret_data.get("secret", secret_string)
        except json.JSONDecodeError:
            _session_secret_cache = secret_string

        _session_secret_cache_time = time.time()
        return _session_secret_cache
    except ClientError as e:
        logger.error(f"Failed to retrieve session secret: {e}")
        return ""


def reset_session_secret_cache() -> None:
    global _session_secret_cache, _session_secret_cache_time
    _session_secret_cache = None
    _session_secret_cache_time = 0.0


def create_session_token(data: dict, secret: str) -> str:
    """Create a signed session token."""
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"


def verify_session_token(token: str) -> Optional[dict]:
    """Verify a session token and return the data if valid."""
    session_secret = _get_session_secret()
    if not session_secret or not token or "." not in token:
        return None

    payload, signature = token.rsplit(".", 1)
    expected_sig = hmac.new(session_secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected_sig):
        return None

    try:
        data = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None

    if data.get("exp", 0) < datetime.now(timezone.utc).timestamp():
        return None

    return data


def get_session_cookie(event: dict) -> Optional[str]:
    cookie_header = get_header(event, "cookie") or ""
    if not cookie_header:
        return None
    cookies = SimpleCookie()
    try:
        cookies.load(cookie_header)
    except CookieError:
        return None
    if "session" in cookies:
        return cookies["session"].value
    return None


def authenticate(event: dict) -> dict:
    """
    Resolve the caller's session.

    Returns:
        Session data, always containing user_id

    Raises:
        UnauthorizedError: no cookie, bad signature, or expired session
    """
    token = get_session_cookie(event)
    if not token:
        raise UnauthorizedError()

    session = verify_session_token(token)
    if not session or not session.get("user_id"):
        raise UnauthorizedError("Session expired. Please log in again.", code="session_expired")
    return session


def require_admin(session: dict) -> UserRecord:
    """
    Load the caller's user record and require the admin role.

    The stored role is authoritative; a role claim inside the cookie is ignored.

    Raises:
        ForbiddenError: user missing or not an administrator
    """
    user = get_user(session["user_id"])
    if user is None or Role.parse(user.get("role")) is not Role.ADMIN:
        logger.warning(f"Non-admin user {session['user_id']} attempted an admin action")
        raise ForbiddenError("Administrator access required")
    return user
