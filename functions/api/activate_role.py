"""
Activate Role Endpoint - POST /admin/roles/activate

Administrator verification of a paid role: starts the active window and
grants the package's role to the user.
"""

import logging

from botocore.exceptions import ClientError

from shared.activation import activate_user_role
from shared.errors import APIError, BillingError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import error_response, success_response
from shared.session_auth import authenticate, require_admin

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        session = authenticate(event)
        admin = require_admin(session)
        body = parse_json_body(event)
    except APIError as e:
        return e.to_response(origin)
    except ClientError as e:
        logger.error(f"Store error loading admin: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    user_role_id = body.get("userRoleId")
    if not user_role_id:
        return error_response(400, "missing_fields", "userRoleId is required", origin=origin)

    try:
        role = activate_user_role(user_role_id, admin["pk"])
    except BillingError as e:
        logger.warning(f"Activation of {user_role_id} rejected: {e}")
        return e.to_api_error().to_response(origin)
    except ClientError as e:
        logger.error(f"Store error activating {user_role_id}: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    return success_response(
        {
            "success": True,
            "message": "User role activated successfully",
            "user_role": {
                "id": role["pk"],
                "user_id": role["user_id"],
                "start_date": role["start_date"],
                "end_date": role["end_date"],
                "verified_by": role["verified_by"],
            },
        },
        origin=origin,
    )
