# Shared utilities package
from .dynamo import get_role_package, get_user
from .errors import APIError, BillingError, ConflictError, NotFoundError, TransientError, ValidationError
from .response_utils import error_response, success_response
from .types import Role

__all__ = [
    "get_user",
    "get_role_package",
    "error_response",
    "success_response",
    "APIError",
    "BillingError",
    "ConflictError",
    "NotFoundError",
    "TransientError",
    "ValidationError",
    "Role",
]
