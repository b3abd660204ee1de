"""CloudWatch Metrics client implementation."""

import os
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..domain.interfaces import Logger, MetricsClient


class CloudWatchMetricsClient(MetricsClient):
    """CloudWatch Metrics client implementation.

    Metric failures never reach the caller.
    """

    def __init__(
        self,
        logger: Logger,
        namespace: str = "CertificatePipeline",
        region: str = "us-east-1",
        enabled: bool = True,
    ):
        """Initialize CloudWatch client."""
        self.logger = logger
        self.namespace = namespace
        self.enabled = enabled
        self.cloudwatch = None
        if enabled:
            self.cloudwatch = boto3.client(
                "cloudwatch",
                region_name=region,
                endpoint_url=os.getenv("AWS_ENDPOINT_URL"),
            )

    def put_metric(self, metric_name: str, value: float, unit: str = "Count") -> None:
        """Put a custom metric."""
        if self.cloudwatch is None:
            return
        try:
            self.cloudwatch.put_metric_data(
                Namespace=self.namespace,
                MetricData=[
                    {
                        "MetricName": metric_name,
                        "Value": value,
                        "Unit": unit,
                    }
                ],
            )
        except (BotoCoreError, ClientError) as e:
            self.logger.warning("Failed to put metric", metric=metric_name, error=str(e))
