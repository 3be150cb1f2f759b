"""
Centralized AWS client factory with lazy initialization.

Defers boto3 client/resource creation until first use. Every client gets
bounded connect/read timeouts so a slow AWS dependency cannot stall a
handler or the expiry sweep.
"""

from shared.constants import AWS_CONNECT_TIMEOUT, AWS_READ_TIMEOUT

_dynamodb = None
_secretsmanager = None
_ses = None
_cloudwatch = None


def _client_config():
    from botocore.config import Config

    return Config(
        connect_timeout=AWS_CONNECT_TIMEOUT,
        read_timeout=AWS_READ_TIMEOUT,
        retries={"max_attempts": 3, "mode": "standard"},
    )


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource("dynamodb", config=_client_config())
    return _dynamodb


def get_secretsmanager():
    """Get Secrets Manager client, creating it lazily on first use."""
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager", config=_client_config())
    return _secretsmanager


def get_ses():
    """Get SES client, creating it lazily on first use."""
    global _ses
    if _ses is None:
        import boto3
        _ses = boto3.client("ses", config=_client_config())
    return _ses


def get_cloudwatch():
    """Get CloudWatch client, creating it lazily on first use."""
    global _cloudwatch
    if _cloudwatch is None:
        import boto3
        _cloudwatch = boto3.client("cloudwatch", config=_client_config())
    return _cloudwatch


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _secretsmanager, _ses, _cloudwatch
    _dynamodb = None
    _secretsmanager = None
    _ses = None
    _cloudwatch = None
