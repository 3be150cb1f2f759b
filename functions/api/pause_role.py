"""
Pause Role Endpoint - POST /roles/pause

Pauses or resumes an active role. The owner or an administrator may call
it. Pausing does not extend the active window.
"""

import logging

from botocore.exceptions import ClientError

from shared.activation import set_paused
from shared.dynamo import get_user
from shared.errors import APIError, BillingError, ForbiddenError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import error_response, success_response
from shared.role_store import get_user_role
from shared.session_auth import authenticate
from shared.types import Role

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Request body:
    {
        "userRoleId": "ur_...",
        "paused": true
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        session = authenticate(event)
        body = parse_json_body(event)
    except APIError as e:
        return e.to_response(origin)

    user_role_id = body.get("userRoleId")
    paused = body.get("paused", True)
    if not user_role_id or not isinstance(paused, bool):
        return error_response(
            400, "missing_fields", "userRoleId is required and paused must be a boolean", origin=origin
        )

    try:
        role = get_user_role(user_role_id)
        if role is None:
            return error_response(404, "role_not_found", "User role not found", origin=origin)

        if role.get("user_id") != session["user_id"]:
            caller = get_user(session["user_id"]) or {}
            if Role.parse(caller.get("role")) is not Role.ADMIN:
                return ForbiddenError().to_response(origin)

        updated = set_paused(user_role_id, paused)
    except BillingError as e:
        return e.to_api_error().to_response(origin)
    except ClientError as e:
        logger.error(f"Store error pausing {user_role_id}: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    return success_response(
        {
            "success": True,
            "message": f"User role {'paused' if paused else 'resumed'} successfully",
            "user_role": {"id": updated["pk"], "is_paused": updated["is_paused"]},
        },
        origin=origin,
    )
