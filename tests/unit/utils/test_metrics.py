"""
Module: test_metrics.py
Description: Unit tests for the CloudWatch metrics client, signing and logging helpers.
"""

import hashlib
import hmac
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

from eventrelay.models.queue import QueueStats
from eventrelay.utils.logger import configure_logging, get_logger
from eventrelay.utils.metrics import MetricsClient
from eventrelay.utils.signing import hmac_sha256_signer


@pytest.fixture
def cloudwatch(aws_credentials):
    with mock_aws():
        yield boto3.client('cloudwatch', region_name='us-east-1')


class TestMetricsClient:
    """Test cases for MetricsClient."""

    def test_put_metric(self, cloudwatch):
        client = MetricsClient(namespace="EventRelayTest", region_name="us-east-1")

        assert client.put_metric("EntriesDropped", 1.0, dimensions={"Reason": "overflow"}) is True

        metrics = cloudwatch.list_metrics(Namespace="EventRelayTest")["Metrics"]
        assert [m["MetricName"] for m in metrics] == ["EntriesDropped"]
        assert metrics[0]["Dimensions"] == [{"Name": "Reason", "Value": "overflow"}]

    def test_publish_queue_stats(self, cloudwatch):
        client = MetricsClient(namespace="EventRelayTest", region_name="us-east-1")
        stats = QueueStats(current_size=3, total_enqueued=10, total_dequeued=6, total_dropped=1, peak_size=5)

        assert client.publish_queue_stats(stats) is True

        names = {m["MetricName"] for m in cloudwatch.list_metrics(Namespace="EventRelayTest")["Metrics"]}
        assert names == {
            "QueueDepth",
            "QueuePeakSize",
            "QueueTotalEnqueued",
            "QueueTotalDequeued",
            "QueueTotalDropped",
        }

    def test_failures_are_swallowed(self):
        boto_client = MagicMock()
        boto_client.put_metric_data.side_effect = Exception("throttled")
        client = MetricsClient(client=boto_client)

        assert client.put_metric("QueueDepth", 1.0) is False

    def test_datum_shape(self):
        boto_client = MagicMock()
        client = MetricsClient(namespace="NS", client=boto_client)

        client.put_metric("FlushLatency", 12.5, unit="Milliseconds")

        kwargs = boto_client.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == "NS"
        assert kwargs["MetricData"][0]["MetricName"] == "FlushLatency"
        assert kwargs["MetricData"][0]["Unit"] == "Milliseconds"
        assert "Dimensions" not in kwargs["MetricData"][0]


class TestSigning:
    """Test cases for the default signer."""

    def test_hmac_sha256(self):
        expected = hmac.new(b"secret", b"payload", hashlib.sha256).digest()

        assert hmac_sha256_signer(b"payload", "secret") == expected
        assert hmac_sha256_signer(b"payload", b"secret") == expected


class TestLogger:
    """Test cases for the structlog configuration."""

    def test_json_output(self, capsys):
        configure_logging("INFO")
        logger = get_logger("eventrelay.test")

        logger.info("Request queued", request_id="req_1", priority="HIGH")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert '"event": "Request queued"' in line
        assert '"request_id": "req_1"' in line
        assert '"level": "INFO"' in line
        assert '"timestamp"' in line

    def test_level_filtering(self, capsys):
        configure_logging("WARNING")
        try:
            get_logger("eventrelay.test").info("hidden")
            assert "hidden" not in capsys.readouterr().out
        finally:
            configure_logging("INFO")
