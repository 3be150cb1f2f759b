"""
User Roles Endpoint - GET /roles

The caller's role history, newest first, each with its payment ledger.
Administrators may pass ?userId= to view another user.
"""

import logging

from botocore.exceptions import ClientError

from shared.activation import derive_state
from shared.errors import APIError, BillingError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin, get_query_param
from shared.response_utils import error_response, success_response
from shared.role_store import list_transactions_for_role, list_user_roles
from shared.session_auth import authenticate, require_admin

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _serialize_role(role: dict) -> dict:
    try:
        state = derive_state(role).value
    except BillingError:
        logger.warning(f"Role {role['pk']} has inconsistent lifecycle flags")
        state = "unknown"

    return {
        "id": role["pk"],
        "package_id": role.get("role_package_id"),
        "state": state,
        "start_date": role.get("start_date"),
        "end_date": role.get("end_date"),
        "total_listings": role.get("total_listings", 0),
        "renewal_count": role.get("renewal_count", 0),
        "transactions": [
            {
                "session_id": t["pk"],
                "kind": t.get("kind"),
                "amount": t.get("amount"),
                "currency": t.get("currency"),
                "status": t.get("status"),
                "invoice_url": t.get("invoice_url"),
                "created_at": t.get("created_at"),
            }
            for t in list_transactions_for_role(role["pk"])
        ],
    }


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        session = authenticate(event)
        user_id = session["user_id"]
        requested = get_query_param(event, "userId")
        if requested and requested != user_id:
            require_admin(session)
            user_id = requested
    except APIError as e:
        return e.to_response(origin)
    except ClientError as e:
        logger.error(f"Store error loading caller: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    try:
        roles = [_serialize_role(r) for r in list_user_roles(user_id)]
    except ClientError as e:
        logger.error(f"Store error listing roles for {user_id}: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    return success_response({"user_id": user_id, "roles": roles}, origin=origin)
