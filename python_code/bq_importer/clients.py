"""
A factory module for creating and providing cloud clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. The importer receives either real AWS/GCP clients or test doubles,
which makes the business logic fully testable without real cloud calls. AWS
clients honour the ``USE_MOTO`` convention used by the test suite.
"""

import base64
import json
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
import botocore.config
from google.auth.credentials import AnonymousCredentials, Credentials
from google.cloud import bigquery, storage
from google.oauth2 import service_account
from mypy_boto3_s3 import S3Client
from mypy_boto3_secretsmanager import SecretsManagerClient
from mypy_boto3_sqs import SQSClient

from .config import AWSConfig, GCPConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for boto3 clients that need to be
# resilient to transient network or server-side errors.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(retries={"max_attempts": 5, "mode": "adaptive"})

_GCP_SECRET_CACHE: Dict[str, Any] = {
    "secret_id": None,
    "data": None,
    "timestamp": datetime.min.replace(tzinfo=timezone.utc),
}


def get_boto_clients(aws: Optional[AWSConfig] = None) -> Tuple[S3Client, SQSClient, SecretsManagerClient]:
    """
    Returns a tuple of the AWS service clients used by the importer.

    The region comes from the configuration, falling back to ``AWS_REGION``.
    Endpoint overrides and static keys are applied when configured (for local
    stacks such as LocalStack or MinIO). In a test run with moto active the
    calls are intercepted and mocked clients are returned.

    Returns:
        A tuple of initialized boto3 clients: (s3_client, sqs_client, secretsmanager_client)
    """
    aws = aws or AWSConfig()
    aws_region = aws.region or os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS region not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    common: Dict[str, Any] = {"region_name": aws_region, "config": BOTO_CONFIG_RETRYABLE}
    if aws.access_key_id or aws.secret_access_key:
        common["aws_access_key_id"] = aws.access_key_id
        common["aws_secret_access_key"] = aws.secret_access_key

    s3_client: S3Client = boto3.client("s3", endpoint_url=aws.s3_endpoint or None, **common)
    sqs_client: SQSClient = boto3.client("sqs", endpoint_url=aws.sqs_endpoint or None, **common)
    secretsmanager_client: SecretsManagerClient = boto3.client(
        "secretsmanager", endpoint_url=aws.secretsmanager_endpoint or None, **common
    )
    return s3_client, sqs_client, secretsmanager_client


def _service_account_info(gcp: GCPConfig, secrets: Optional[SecretsManagerClient], ttl_seconds: int, force_refresh: bool):
    global _GCP_SECRET_CACHE
    if gcp.credential_secret_id:
        if secrets is None:
            raise ConfigError("cloud.gcp.credential_secret_id is set but no Secrets Manager client was provided")
        now = datetime.now(timezone.utc)
        cache_expiry = _GCP_SECRET_CACHE["timestamp"] + timedelta(seconds=ttl_seconds)
        if (
            not force_refresh
            and _GCP_SECRET_CACHE["secret_id"] == gcp.credential_secret_id
            and _GCP_SECRET_CACHE["data"] is not None
            and now < cache_expiry
        ):
            return _GCP_SECRET_CACHE["data"]

        logger.info(f"Refreshing GCP credentials. Force refresh: {force_refresh}")
        secret_value = secrets.get_secret_value(SecretId=gcp.credential_secret_id)
        secret_data = json.loads(secret_value["SecretString"])
        _GCP_SECRET_CACHE = {"secret_id": gcp.credential_secret_id, "data": secret_data, "timestamp": now}
        return secret_data

    if gcp.credential:
        try:
            return json.loads(base64.b64decode(gcp.credential))
        except ValueError as e:
            raise ConfigError(f"cloud.gcp.credential is not base64-encoded JSON: {e}") from e
    return None


def get_gcp_credentials(
    gcp: GCPConfig,
    secrets: Optional[SecretsManagerClient] = None,
    ttl_seconds: int = 300,
    force_refresh: bool = False,
) -> Optional[Credentials]:
    """
    Resolves the credentials used by the Cloud Storage and BigQuery clients.

    Precedence: anonymous credentials (emulators), a service account stored in
    Secrets Manager (cached for ``ttl_seconds``), a base64-encoded service
    account in the configuration, and finally None so that the Google client
    libraries fall back to Application Default Credentials.

    Raises:
        ConfigError: If the configured credential cannot be decoded.
        botocore.exceptions.ClientError: If retrieving the secret from Secrets Manager fails.
    """
    if gcp.without_authentication:
        return AnonymousCredentials()
    info = _service_account_info(gcp, secrets, ttl_seconds, force_refresh)
    if info is None:
        return None
    return service_account.Credentials.from_service_account_info(info)


def get_storage_client(gcp: GCPConfig, credentials: Optional[Credentials] = None) -> storage.Client:
    client_options = {"api_endpoint": gcp.cloud_storage_endpoint} if gcp.cloud_storage_endpoint else None
    return storage.Client(project=gcp.project_id or None, credentials=credentials, client_options=client_options)


def bigquery_client_factory(gcp: GCPConfig, credentials: Optional[Credentials] = None) -> Callable[[str], bigquery.Client]:
    client_options = {"api_endpoint": gcp.big_query_endpoint} if gcp.big_query_endpoint else None

    def _factory(project_id: str) -> bigquery.Client:
        return bigquery.Client(project=project_id, credentials=credentials, client_options=client_options)

    return _factory


class BigQueryClientPool:
    """
    Keeps one BigQuery client per project.

    Rules may route to different projects through ``$N`` placeholders, so
    clients are created on first use and reused afterwards.
    """

    def __init__(self, factory: Callable[[str], bigquery.Client]):
        self._factory = factory
        self._lock = threading.Lock()
        self._clients: Dict[str, bigquery.Client] = {}

    def get(self, project_id: str) -> bigquery.Client:
        with self._lock:
            client = self._clients.get(project_id)
            if client is None:
                client = self._factory(project_id)
                self._clients[project_id] = client
            return client
