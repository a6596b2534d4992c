"""
Core business logic for the importer.

These functions are designed to be "pure" and testable, containing no direct
AWS SDK calls (unless a client is passed in as an argument) and no global
state. They receive all dependencies, including the Powertools logger, from
their callers, allowing them to be unit-tested in isolation.
"""

import json
import random
import threading
from typing import Any, Dict, List, Optional, cast
from urllib.parse import unquote_plus

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_sqs.client import SQSClient

from .config import SERVICE_NAME
from .errors import AcknowledgeMaxRetryError
from .model import BackoffPolicy, Locator, S3EventRecord

_RNG = random.Random()


class MalformedNotification(ValueError):
    """The message body is not an S3 event notification."""


def decode_key(key: str) -> str:
    """
    Decodes an URL-encoded S3 object key as found in event notifications.

    S3 percent-encodes keys and writes spaces as ``+``. Keys without either are
    returned unchanged, and so are keys that do not decode to valid UTF-8.
    """
    if "%" not in key and "+" not in key:
        return key
    try:
        return unquote_plus(key, errors="strict")
    except UnicodeDecodeError:
        return key


def parse_notification(body: Optional[str]) -> List[Locator]:
    """
    Extracts the S3 objects listed in an "object created" notification.

    A body without a ``Records`` attribute (for example the ``s3:TestEvent``
    S3 sends when a notification is configured) yields no locators.

    Args:
        body: The raw SQS message body.

    Returns:
        One source locator per event record, in notification order.

    Raises:
        MalformedNotification: If the body is missing, is not JSON, or a record
                               lacks the bucket name or object key.
    """
    if body is None:
        raise MalformedNotification("body is empty")
    try:
        event = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedNotification(f"body is not JSON: {e}") from e
    if not isinstance(event, dict):
        raise MalformedNotification(f"body must be a JSON object, got {type(event).__name__}")

    records = event.get("Records", [])
    if not isinstance(records, list):
        raise MalformedNotification("'Records' must be a list")

    locators = []
    for i, record in enumerate(records):
        try:
            entity = cast(S3EventRecord, record)["s3"]
            locators.append(Locator.s3(entity["bucket"]["name"], decode_key(entity["object"]["key"])))
        except (KeyError, TypeError) as e:
            raise MalformedNotification(f"record {i} is not an S3 event record: missing {e}") from e
    return locators


def backoff_delay(policy: BackoffPolicy, attempt: int, rng: Optional[random.Random] = None) -> float:
    """Returns the wait before retry number ``attempt`` (0-based)."""
    rng = rng or _RNG
    delay = policy.interval * (2**attempt)
    return max(0.0, delay + delay * rng.uniform(-policy.jitter_factor, policy.jitter_factor))


def delete_message_with_retry(
    sqs_client: SQSClient,
    queue_url: str,
    receipt_handle: str,
    message_id: str,
    policy: BackoffPolicy,
    cancel: threading.Event,
    logger: Logger,
) -> None:
    """
    Deletes one message from SQS, retrying failures with exponential backoff.

    The first attempt is made immediately; each failure is followed by a
    backoff wait and a retry, up to ``policy.max_retries`` retries. Waits are
    made on ``cancel`` so a shutdown request ends the loop early.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the SQS queue.
        receipt_handle: The receipt handle of the delivery to delete.
        message_id: The SQS message id, for logging.
        policy: The retry schedule.
        cancel: Set when the process is shutting down.
        logger: The Powertools Logger instance for structured logging.

    Raises:
        AcknowledgeMaxRetryError: If every attempt failed, or shutdown was
                                  requested while waiting to retry.
    """
    last_error: Optional[Exception] = None
    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            wait_time = backoff_delay(policy, attempt - 1)
            logger.info(f"Waiting {wait_time:.2f}s before SQS delete retry.", extra={"attempt": attempt})
            if cancel.wait(wait_time):
                logger.warning("Shutdown requested during SQS delete retry.", extra={"message_id": message_id})
                raise AcknowledgeMaxRetryError(
                    f"[{message_id}] delete interrupted by shutdown after {attempt} attempts; last error: {last_error}"
                )
        try:
            sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as e:
            last_error = e
            logger.error(
                "Error on SQS delete_message.",
                extra={"message_id": message_id, "error": str(e), "attempt": attempt + 1},
            )
            continue
        if attempt > 0:
            logger.info("Retry completed message.", extra={"message_id": message_id, "attempt": attempt + 1})
        return

    logger.critical(
        "Max retry count reached. Giving up.",
        extra={"message_id": message_id, "last_error": str(last_error)},
    )
    raise AcknowledgeMaxRetryError(f"[{message_id}] max retry count reached; last error: {last_error}")


def emit_metrics(namespace: str, environment: str, status: str, payload: Dict[str, Any]) -> None:
    """
    Emits an outcome as CloudWatch Embedded Metric Format records.

    A ``status`` count is always recorded; every numeric value of
    ``payload`` becomes an additional metric (``*_ms`` values in milliseconds).
    """
    metrics = Metrics(namespace=namespace, service=SERVICE_NAME)
    metrics.add_dimension(name="environment", value=environment)
    metrics.add_metric(name=status, unit=MetricUnit.Count, value=1)
    for name, value in payload.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        unit = MetricUnit.Milliseconds if name.endswith("_ms") else MetricUnit.Count
        metrics.add_metric(name=name, unit=unit, value=value)
    metrics.flush_metrics()
