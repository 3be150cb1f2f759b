"""
Shared pytest fixtures for RolePass tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from decimal import Decimal

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

TEST_STRIPE_API_KEY = "sk_test_123"
TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_SESSION_SECRET = "test-session-secret"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")
    os.environ.setdefault("BASE_URL", "https://rolepass.app")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients
    reset_clients()


@pytest.fixture(autouse=True)
def reset_secret_caches():
    """Reset cached Stripe and session secrets between tests to prevent pollution."""
    yield
    from shared.billing_utils import reset_stripe_secrets_cache
    from shared.session_auth import reset_session_secret_cache
    reset_stripe_secrets_cache()
    reset_session_secret_cache()


@pytest.fixture
def stripe_secrets():
    """Pre-load the Stripe secrets cache so no Secrets Manager call is made."""
    import shared.billing_utils as billing_utils

    billing_utils._stripe_secrets_cache = (TEST_STRIPE_API_KEY, TEST_WEBHOOK_SECRET)
    billing_utils._stripe_secrets_cache_time = 9999999999.0
    return TEST_STRIPE_API_KEY, TEST_WEBHOOK_SECRET


@pytest.fixture
def session_secret():
    import shared.session_auth as session_auth

    session_auth._session_secret_cache = TEST_SESSION_SECRET
    session_auth._session_secret_cache_time = 9999999999.0
    return TEST_SESSION_SECRET


@pytest.fixture
def session_cookie(session_secret):
    """Factory for a signed session Cookie header value."""
    from shared.session_auth import create_session_token

    def _make(user_id: str, expires_in: int = 3600) -> str:
        token = create_session_token(
            {"user_id": user_id, "email": f"{user_id}@example.com", "exp": int(time.time()) + expires_in},
            session_secret,
        )
        return f"session={token}"

    return _make


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName="rolepass-users",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="rolepass-role-packages",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    # User roles table; expiry-index is sparse on live_status
    dynamodb.create_table(
        TableName="rolepass-user-roles",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "live_status", "AttributeType": "S"},
            {"AttributeName": "end_date", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "expiry-index",
                "KeySchema": [
                    {"AttributeName": "live_status", "KeyType": "HASH"},
                    {"AttributeName": "end_date", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "user-index",
                "KeySchema": [
                    {"AttributeName": "user_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="rolepass-transactions",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],  # Stripe session id
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "user_role_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "user-role-index",
                "KeySchema": [
                    {"AttributeName": "user_role_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table for webhook claims, audit trail and the sweep lease
    dynamodb.create_table(
        TableName="rolepass-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def seeded_catalog(mock_dynamodb):
    """A buyer, an administrator and one 30-day agent package at $100 per unit."""
    users = mock_dynamodb.Table("rolepass-users")
    users.put_item(Item={"pk": "user_buyer", "email": "buyer@example.com", "username": "Buyer", "role": "user"})
    users.put_item(Item={"pk": "user_admin", "email": "admin@example.com", "username": "Admin", "role": "admin"})

    packages = mock_dynamodb.Table("rolepass-role-packages")
    packages.put_item(
        Item={
            "pk": "agent-monthly",
            "name": "Agent Monthly",
            "price": Decimal("100"),
            "duration_days": 30,
            "listing_limit": 10,
            "granted_role": "agent",
        }
    )
    return mock_dynamodb


@pytest.fixture
def put_user_role(mock_dynamodb):
    """Factory that writes a UserRole item (and optionally points the user at it)."""

    def _put(role_id: str, user_id: str = "user_buyer", link_user: bool = True, **attrs):
        item = {
            "pk": role_id,
            "user_id": user_id,
            "role_package_id": "agent-monthly",
            "duration_days": 30,
            "total_listings": 10,
            "is_active": False,
            "is_paused": False,
            "is_expired": False,
            "is_verified": False,
            "renewal_count": 0,
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }
        item.update(attrs)
        mock_dynamodb.Table("rolepass-user-roles").put_item(Item=item)
        if link_user and not item["is_expired"]:
            mock_dynamodb.Table("rolepass-users").update_item(
                Key={"pk": user_id},
                UpdateExpression="SET live_user_role_id = :rid",
                ExpressionAttributeValues={":rid": role_id},
            )
        return item

    return _put


@pytest.fixture
def checkout_session():
    """Factory for a completed Checkout Session payload."""

    def _make(session_id: str = "cs_test_123", duration_days: int = 60, amount_total: int = 20000, **overrides):
        session = {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "paid",
            "amount_total": amount_total,
            "currency": "usd",
            "client_reference_id": "user_buyer",
            "invoice": None,
            "payment_method_types": ["card"],
            "metadata": {
                "userId": "user_buyer",
                "rolePackageId": "agent-monthly",
                "durationDays": str(duration_days),
            },
        }
        session.update(overrides)
        return session

    return _make


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for payload."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def webhook_event(api_gateway_event):
    """Factory for a signed API Gateway webhook delivery."""

    def _make(event_type: str, obj: dict, event_id: str = "evt_test_1", secret: str = TEST_WEBHOOK_SECRET):
        payload = json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "created": int(time.time()),
                "livemode": False,
                "data": {"object": obj},
            }
        )
        event = dict(api_gateway_event)
        event["httpMethod"] = "POST"
        event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        event["body"] = payload
        return event

    return _make


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }
