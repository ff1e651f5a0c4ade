"""
Module: metrics.py
Description: CloudWatch custom metrics publishing.

Publishes delivery metrics to CloudWatch for monitoring queue depth,
flush throughput and drops.

Key Components:
- MetricsClient: CloudWatch metrics client
- put_metric(): Publish individual metrics
- publish_queue_stats(): Publish a QueueStats snapshot in one call
- Graceful error handling for metrics failures

Dependencies: boto3, typing, logger
"""

from typing import Dict, List, Optional

import boto3

from eventrelay.models.queue import QueueStats
from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)


class MetricsClient:
    """CloudWatch metrics client."""

    def __init__(self, namespace: str = "EventRelay", region_name: Optional[str] = None, client=None):
        """
        Initialize metrics client.

        Args:
            namespace: CloudWatch metrics namespace
            region_name: AWS region (default resolution when omitted)
            client: Optional preconfigured boto3 CloudWatch client
        """
        self.namespace = namespace
        self.cloudwatch = client or boto3.client('cloudwatch', region_name=region_name)

        logger.info(
            "Metrics client initialized",
            namespace=namespace
        )

    @staticmethod
    def _datum(
        metric_name: str,
        value: float,
        unit: str = 'Count',
        dimensions: Optional[Dict[str, str]] = None
    ) -> dict:
        metric_data = {
            'MetricName': metric_name,
            'Value': value,
            'Unit': unit
        }

        if dimensions:
            metric_data['Dimensions'] = [
                {'Name': k, 'Value': v}
                for k, v in dimensions.items()
            ]
        return metric_data

    def _put(self, metric_data: List[dict]) -> bool:
        try:
            self.cloudwatch.put_metric_data(
                Namespace=self.namespace,
                MetricData=metric_data
            )

            logger.debug(
                "Metrics published to CloudWatch",
                metric_names=[m['MetricName'] for m in metric_data],
                namespace=self.namespace
            )
            return True

        except Exception as e:
            # Don't fail delivery if metrics fail
            logger.warning(
                "Failed to publish metrics",
                metric_names=[m['MetricName'] for m in metric_data],
                error=str(e),
                namespace=self.namespace
            )
            return False

    def put_metric(
        self,
        metric_name: str,
        value: float,
        unit: str = 'Count',
        dimensions: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Publish a metric to CloudWatch.

        Args:
            metric_name: Name of the metric
            value: Metric value
            unit: Metric unit (Count, Milliseconds, etc.)
            dimensions: Optional metric dimensions

        Returns:
            True if the metric was accepted
        """
        return self._put([self._datum(metric_name, value, unit, dimensions)])

    def publish_queue_stats(self, stats: QueueStats, dimensions: Optional[Dict[str, str]] = None) -> bool:
        """Publish queue depth and totals as one PutMetricData call."""
        return self._put([
            self._datum('QueueDepth', float(stats.current_size), dimensions=dimensions),
            self._datum('QueuePeakSize', float(stats.peak_size), dimensions=dimensions),
            self._datum('QueueTotalEnqueued', float(stats.total_enqueued), dimensions=dimensions),
            self._datum('QueueTotalDequeued', float(stats.total_dequeued), dimensions=dimensions),
            self._datum('QueueTotalDropped', float(stats.total_dropped), dimensions=dimensions),
        ])
