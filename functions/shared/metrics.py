"""
CloudWatch Metrics Helper

Provides utilities for emitting custom metrics to CloudWatch.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "PLG/Lifecycle")


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
        # Don't fail the Lambda if metrics fail
        logger.warning(f"Failed to emit batch metrics: {e}")


def emit_batch_result_metrics(component: str, result: Dict[str, Any]) -> None:
    """Emit success/skipped/failed counters for one handler invocation."""
    dimensions = {"Component": component}
    emit_batch_metrics([
        {"metric_name": "RecordsSucceeded", "value": result.get("success", result.get("sent", 0)), "dimensions": dimensions},
        {"metric_name": "RecordsSkipped", "value": result.get("skipped", 0), "dimensions": dimensions},
        {"metric_name": "RecordsFailed", "value": result.get("failed", 0), "dimensions": dimensions},
    ])
