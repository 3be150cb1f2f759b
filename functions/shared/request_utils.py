"""Shared request utilities for API handlers."""

import base64
import binascii
import json
import logging
from typing import Optional

from shared.errors import InvalidRequestError

logger = logging.getLogger(__name__)


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway preserves client casing)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def get_origin(event: dict) -> Optional[str]:
    """Extract Origin header from request."""
    return get_header(event, "origin")


def get_raw_body(event: dict) -> str:
    """Return the request body exactly as delivered.

    Webhook signatures are computed over these bytes, so the body must not
    be parsed and re-serialized before verification.
    """
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise InvalidRequestError("Request body is not valid base64-encoded UTF-8", code="invalid_body")
    return body


def parse_json_body(event: dict) -> dict:
    """Parse a JSON object body, raising InvalidRequestError on bad input."""
    raw = get_raw_body(event) or "{}"
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidRequestError("Request body must be valid JSON", code="invalid_json")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object", code="invalid_json")
    return body


def get_query_param(event: dict, name: str) -> Optional[str]:
    params = event.get("queryStringParameters") or {}
    value = params.get(name)
    return value.strip() if isinstance(value, str) and value.strip() else None
