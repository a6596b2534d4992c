"""
Pytest configuration and shared fixtures for the importer.

This module provides:
- Fake AWS credentials and moto-backed S3/SQS clients
- In-memory Cloud Storage and BigQuery doubles
- An importer factory wiring the real receiver, resolver, transporter and
  loader to those clients

Example usage in tests:
    def test_something(sqs_client, queue_url, importer_factory):
        importer = importer_factory([make_rule(key_prefix="data")])
        sqs_client.send_message(QueueUrl=queue_url, MessageBody=body)
        assert importer.run_one_cycle().outcome is CycleOutcome.SUCCESS
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass

import boto3
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from bq_importer.app import Importer
from bq_importer.clients import BigQueryClientPool
from bq_importer.loader import BigQueryLoader
from bq_importer.model import BackoffPolicy
from bq_importer.receiver import SQSReceiver
from bq_importer.resolver import Resolver
from bq_importer.rules import Rule
from bq_importer.transporter import Transporter
from tests.fixtures.events import QUEUE_NAME, REGION, SOURCE_BUCKET
from tests.fixtures.fakes import FakeStorageClient, FakeWarehouse

# ============================================================================
# AWS FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Point boto3 at fake credentials so no test can reach real AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("USE_MOTO", "1")


@pytest.fixture
def mocked_aws() -> Iterator[None]:
    with mock_aws():
        yield


@pytest.fixture
def s3_client(mocked_aws):
    """S3 client with the source bucket created."""
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=SOURCE_BUCKET)
    return client


@pytest.fixture
def sqs_client(mocked_aws):
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def queue_url(sqs_client) -> str:
    return sqs_client.create_queue(QueueName=QUEUE_NAME)["QueueUrl"]


# ============================================================================
# GOOGLE CLOUD FIXTURES
# ============================================================================


@pytest.fixture
def storage_client() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def warehouse(storage_client: FakeStorageClient) -> FakeWarehouse:
    """BigQuery double that snapshots the staged object at submission time."""
    return FakeWarehouse(storage=storage_client)


# ============================================================================
# IMPORTER FIXTURES
# ============================================================================


@pytest.fixture
def logger() -> Logger:
    return Logger(service="bq-importer-test", level="DEBUG")


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(interval=0, jitter_factor=0, max_retries=5)


@pytest.fixture
def importer_factory(
    sqs_client, queue_url, s3_client, storage_client, warehouse, logger, fast_backoff
) -> Callable[[Sequence[Rule]], Importer]:
    """Build an importer over moto SQS/S3 and the Google doubles.

    Returns:
        A function taking the rule set and returning a ready Importer
    """

    def _factory(rules: Sequence[Rule]) -> Importer:
        return Importer(
            source=SQSReceiver(sqs_client, QUEUE_NAME, policy=fast_backoff, wait_time_seconds=0, logger=logger),
            router=Resolver(rules, logger),
            copier=Transporter(s3_client, storage_client, logger),
            loader=BigQueryLoader(BigQueryClientPool(warehouse.factory), logger=logger),
            logger=logger,
        )

    return _factory


# ============================================================================
# LAMBDA FIXTURES
# ============================================================================


@dataclass
class LambdaContext:
    function_name: str = "bq-importer"
    memory_limit_in_mb: int = 512
    invoked_function_arn: str = "arn:aws:lambda:us-east-1:123456789012:function:bq-importer"
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"
    remaining_time_in_millis: int = 900_000

    def get_remaining_time_in_millis(self) -> int:
        return self.remaining_time_in_millis


@pytest.fixture
def lambda_context() -> LambdaContext:
    return LambdaContext()
