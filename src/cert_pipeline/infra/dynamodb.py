"""DynamoDB job repository implementation."""

import json
import os
import threading
from decimal import Decimal
from typing import Any, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .xray import xray_capture
from ..domain.errors import TransientBrokerError
from ..domain.interfaces import JobRepository
from ..domain.job import Job, JobState

STATE_INDEX = "state-readyAt-index"

_CONNECTIVITY_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)
_TRANSIENT_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
}


def _to_item(job: Job) -> dict:
    # DynamoDB rejects float; route numbers through Decimal
    return json.loads(json.dumps(job.to_dict()), parse_float=Decimal)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _translate(operation: str, error: Exception) -> Exception:
    if isinstance(error, _CONNECTIVITY_ERRORS):
        return TransientBrokerError(f"DynamoDB unreachable during {operation}: {error}")
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code")
        if code in _TRANSIENT_CODES:
            return TransientBrokerError(f"DynamoDB unavailable during {operation}: {error}")
    return RuntimeError(f"Failed to {operation}: {error}")


class DynamoDBJobRepository(JobRepository):
    """Job records in a DynamoDB table keyed by jobId.

    The ``state-readyAt-index`` GSI serves the per-state listings (leasing,
    delayed promotion, stall checks, retention).
    """

    def __init__(
        self,
        table_name: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        use_ssl: bool = True,
        max_retries: int = 3,
    ):
        """Initialize DynamoDB settings; clients are created lazily per thread."""
        self.table_name = table_name
        self.region = region
        self.endpoint_url = endpoint_url or os.getenv("AWS_ENDPOINT_URL")
        self.use_ssl = use_ssl
        self._config = Config(
            retries={"max_attempts": max_retries, "mode": "standard"},
            connect_timeout=5,
            read_timeout=10,
        )
        self._local = threading.local()

    @property
    def table(self):
        # boto3 resources are not thread-safe: one per thread
        table = getattr(self._local, "table", None)
        if table is None:
            session = boto3.session.Session()
            dynamodb = session.resource(
                "dynamodb",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                use_ssl=self.use_ssl,
                config=self._config,
            )
            table = dynamodb.Table(self.table_name)
            self._local.table = table
        return table

    def ensure_table(self) -> None:
        """Create the jobs table and its state index if missing (local setups)."""
        client = self.table.meta.client
        try:
            client.describe_table(TableName=self.table_name)
            return
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise _translate("describe table", e) from e
        except _CONNECTIVITY_ERRORS as e:
            raise _translate("describe table", e) from e

        try:
            client.create_table(
                TableName=self.table_name,
                KeySchema=[{"AttributeName": "jobId", "KeyType": "HASH"}],
                AttributeDefinitions=[
                    {"AttributeName": "jobId", "AttributeType": "S"},
                    {"AttributeName": "state", "AttributeType": "S"},
                    {"AttributeName": "readyAt", "AttributeType": "N"},
                ],
                GlobalSecondaryIndexes=[
                    {
                        "IndexName": STATE_INDEX,
                        "KeySchema": [
                            {"AttributeName": "state", "KeyType": "HASH"},
                            {"AttributeName": "readyAt", "KeyType": "RANGE"},
                        ],
                        "Projection": {"ProjectionType": "ALL"},
                    }
                ],
                BillingMode="PAY_PER_REQUEST",
            )
            client.get_waiter("table_exists").wait(TableName=self.table_name)
        except (ClientError, *_CONNECTIVITY_ERRORS) as e:
            raise _translate("create table", e) from e

    @xray_capture("dynamodb_ping")
    def ping(self) -> None:
        """Check the table is reachable."""
        try:
            self.table.meta.client.describe_table(TableName=self.table_name)
        except (ClientError, *_CONNECTIVITY_ERRORS) as e:
            raise _translate("describe table", e) from e

    @xray_capture("dynamodb_put_job")
    def put_job(self, job: Job) -> bool:
        """Store a new job; False if the id is taken."""
        try:
            self.table.put_item(
                Item=_to_item(job),
                ConditionExpression=Attr("jobId").not_exists(),
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise _translate("put job", e) from e
        except _CONNECTIVITY_ERRORS as e:
            raise _translate("put job", e) from e

    @xray_capture("dynamodb_get_job")
    def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID."""
        try:
            response = self.table.get_item(Key={"jobId": job_id}, ConsistentRead=True)
        except (ClientError, *_CONNECTIVITY_ERRORS) as e:
            raise _translate("get job", e) from e
        if "Item" not in response:
            return None
        return Job.from_dict(_plain(response["Item"]))

    @xray_capture("dynamodb_update_job")
    def update_job(self, job: Job, expected_version: int) -> bool:
        """Replace a job guarded by its version."""
        try:
            self.table.put_item(
                Item=_to_item(job),
                ConditionExpression=Attr("version").eq(expected_version),
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise _translate("update job", e) from e
        except _CONNECTIVITY_ERRORS as e:
            raise _translate("update job", e) from e

    @xray_capture("dynamodb_list_jobs")
    def list_jobs(
        self,
        state: JobState,
        ready_before: Optional[int] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Job]:
        """Query the state index ordered by readyAt."""
        condition = Key("state").eq(state.value)
        if ready_before is not None:
            condition = condition & Key("readyAt").lte(ready_before)

        kwargs = {
            "IndexName": STATE_INDEX,
            "KeyConditionExpression": condition,
            "ScanIndexForward": not newest_first,
        }
        jobs: List[Job] = []
        try:
            while True:
                if limit is not None:
                    kwargs["Limit"] = limit - len(jobs)
                response = self.table.query(**kwargs)
                jobs.extend(Job.from_dict(_plain(item)) for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key or (limit is not None and len(jobs) >= limit):
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, *_CONNECTIVITY_ERRORS) as e:
            raise _translate("list jobs", e) from e
        return jobs

    @xray_capture("dynamodb_count_jobs")
    def count_jobs(self, state: JobState) -> int:
        """Count jobs in a state."""
        kwargs = {
            "IndexName": STATE_INDEX,
            "KeyConditionExpression": Key("state").eq(state.value),
            "Select": "COUNT",
        }
        total = 0
        try:
            while True:
                response = self.table.query(**kwargs)
                total += response.get("Count", 0)
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, *_CONNECTIVITY_ERRORS) as e:
            raise _translate("count jobs", e) from e
        return total

    @xray_capture("dynamodb_delete_job")
    def delete_job(self, job_id: str, expected_version: int) -> bool:
        """Delete a job guarded by its version."""
        try:
            self.table.delete_item(
                Key={"jobId": job_id},
                ConditionExpression=Attr("version").eq(expected_version),
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise _translate("delete job", e) from e
        except _CONNECTIVITY_ERRORS as e:
            raise _translate("delete job", e) from e
