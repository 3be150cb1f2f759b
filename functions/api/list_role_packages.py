"""
List Role Packages Endpoint - GET /role-packages

Public catalog for the pricing page, cheapest first.
"""

import logging

from botocore.exceptions import ClientError

from shared.dynamo import list_role_packages
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin
from shared.response_utils import error_response, success_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        packages = list_role_packages()
    except ClientError as e:
        logger.error(f"Store error listing role packages: {e}")
        return error_response(503, "temporary_error", "Temporary error, please retry", origin=origin)

    packages.sort(key=lambda p: (p.get("price", 0), p["pk"]))

    return success_response(
        {
            "packages": [
                {
                    "id": p["pk"],
                    "name": p.get("name") or p["pk"],
                    "price": p.get("price"),
                    "duration_days": p.get("duration_days"),
                    "listing_limit": p.get("listing_limit", 0),
                    "granted_role": p.get("granted_role"),
                }
                for p in packages
            ]
        },
        headers={"Cache-Control": "public, max-age=300"},
        origin=origin,
    )
