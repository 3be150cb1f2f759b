"""
Lambda proxy responses for the RolePass API.

Every body is JSON; DynamoDB Decimals are written as int or float.
Browser callers get CORS headers only when their Origin is listed in
ALLOWED_ORIGINS (comma-separated env var).
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

ALLOWED_ORIGINS: FrozenSet[str] = frozenset(
    o.strip()
    for o in os.environ.get("ALLOWED_ORIGINS", "https://rolepass.app,https://www.rolepass.app").split(",")
    if o.strip()
)


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for a listed origin, empty dict otherwise."""
    if not origin or origin not in ALLOWED_ORIGINS:
        return {}
    # Session cookie auth, so credentials must be allowed
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _respond(status_code: int, body: Any, headers: Optional[Dict[str, str]], origin: Optional[str]) -> dict:
    response_headers = {"Content-Type": "application/json", **get_cors_headers(origin)}
    if headers:
        response_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    origin: Optional[str] = None,
    **extra_body: Any,
) -> dict:
    """
    Build an `{"error": {"code", "message"}}` response.

    Args:
        status_code: HTTP status code
        code: Machine-readable snake_case code
        message: Human-readable message
        headers: Extra response headers (e.g. Retry-After)
        details: Optional structured context under error.details
        origin: Request Origin header for CORS
        extra_body: Top-level fields next to "error" (webhook acks use
            received/processed)
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return _respond(status_code, {"error": error, **extra_body}, headers, origin)


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    return _respond(status_code, data, headers, origin)
