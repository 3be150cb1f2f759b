"""
CloudWatch Metrics Helper

Provides utilities for emitting custom metrics to CloudWatch.
Metrics are best-effort: a failure is logged and never raised.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "RolePass")


def _metric_datum(
    metric_name: str,
    value: float,
    unit: str,
    dimensions: Optional[Dict[str, str]],
) -> dict:
    data = {
        "MetricName": metric_name,
        "Value": value,
        "Unit": unit,
        "Timestamp": datetime.now(timezone.utc),
    }
    if dimensions:
        data["Dimensions"] = [{"Name": k, "Value": v} for k, v in dimensions.items()]
    return data


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Example:
        emit_metric("CheckoutSessionsCreated", dimensions={"Package": "agent-monthly"})
    """
    try:
        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[_metric_datum(metric_name, value, unit, dimensions)],
        )
        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )
    except Exception as e:
        # Don't fail the caller if metrics fail
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_batch_metrics(metrics: list[Dict[str, Any]]) -> None:
    """
    Emit multiple metrics in as few API calls as possible.

    Args:
        metrics: List of metric dictionaries with keys:
            - metric_name (str)
            - value (float)
            - unit (str, optional)
            - dimensions (dict, optional)
    """
    try:
        metric_data = [
            _metric_datum(
                metric["metric_name"],
                metric.get("value", 1.0),
                metric.get("unit", "Count"),
                metric.get("dimensions"),
            )
            for metric in metrics
        ]

        # CloudWatch allows up to 20 metrics per request
        for i in range(0, len(metric_data), 20):
            get_cloudwatch().put_metric_data(
                Namespace=NAMESPACE,
                MetricData=metric_data[i : i + 20],
            )

        logger.debug(f"Emitted {len(metric_data)} metrics in batch")

    except Exception as e:
        logger.warning(f"Failed to emit batch metrics: {e}")


def emit_webhook_metric(event_type: str, outcome: str) -> None:
    """
    Emit a webhook processing metric.

    Args:
        event_type: Stripe event type
        outcome: 'processed', 'duplicate', 'ignored', 'transient_failure', 'permanent_failure'
    """
    emit_metric(
        "WebhookEvents",
        dimensions={"EventType": event_type[:100], "Outcome": outcome},
    )
