"""
Shared Type Definitions for Lambda Handlers and billing records.

Provides TypedDict definitions for AWS Lambda events and the DynamoDB items
this service reads and writes, plus the Role enumeration.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Optional, TypedDict


class Role(str, Enum):
    """Effective role a user holds on the platform."""

    USER = "user"
    AGENT = "agent"
    SELLER = "seller"
    LOAN_OFFICER = "loan_officer"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any, default: Optional["Role"] = None) -> Optional["Role"]:
        """Convert a stored value to a Role, returning default for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return default


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    pathParameters: Optional[dict[str, str]]
    queryStringParameters: Optional[dict[str, str]]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class LambdaResponse(TypedDict):
    """Standard Lambda response structure."""

    statusCode: int
    headers: dict[str, str]
    body: str


class UserRecord(TypedDict, total=False):
    """Item in the users table."""

    pk: str
    email: str
    username: str
    role: str
    previous_role: str
    live_user_role_id: str
    updated_at: str


class RolePackage(TypedDict, total=False):
    """Catalog entry in the role packages table."""

    pk: str
    name: str
    price: Decimal
    duration_days: int
    listing_limit: int
    granted_role: str
    created_at: str


class UserRoleRecord(TypedDict, total=False):
    """One subscription lifecycle instance."""

    pk: str
    user_id: str
    role_package_id: str
    start_date: str
    end_date: str
    duration_days: int
    total_listings: int
    is_active: bool
    is_paused: bool
    is_expired: bool
    is_verified: bool
    verified_by: str
    verified_at: str
    live_status: str
    renewal_count: int
    last_reminder_days: int
    last_reminder_for: str
    last_reminder_at: str
    expired_at: str
    created_at: str
    updated_at: str


class TransactionRecord(TypedDict, total=False):
    """Ledger row keyed by the provider's checkout session id."""

    pk: str
    user_id: str
    user_role_id: str
    role_package_id: str
    kind: str
    amount: Decimal
    currency: str
    status: str
    method: str
    invoice_url: str
    created_at: str
