"""
Test fixtures for the S3 to BigQuery importer.

This module provides:
- make_rule / s3_event_body: Build validated rules and notification bodies
- Fake Cloud Storage and BigQuery clients that record what happened
"""

from tests.fixtures.events import (
    QUEUE_NAME,
    REGION,
    SOURCE_BUCKET,
    STAGING_BUCKET,
    WAREHOUSE_PROJECT,
    make_rule,
    s3_event_body,
)
from tests.fixtures.fakes import FakeStorageClient, FakeWarehouse

__all__ = [
    "QUEUE_NAME",
    "REGION",
    "SOURCE_BUCKET",
    "STAGING_BUCKET",
    "WAREHOUSE_PROJECT",
    "FakeStorageClient",
    "FakeWarehouse",
    "make_rule",
    "s3_event_body",
]
