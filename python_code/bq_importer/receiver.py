"""
SQS receiver: pulls one notification at a time and hands back its receipt.
"""

import threading
from typing import List, Optional, Tuple

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_sqs import SQSClient

from . import core
from .config import default_logger
from .errors import NoMessageError, ParseError, ReceiveError
from .model import BackoffPolicy, Locator


class ReceiptHandle:
    """
    Ties one in-flight SQS message to its eventual acknowledgement.

    ``acknowledge()`` deletes the message (retrying with backoff) and is
    guarded so that only the first successful call reaches SQS. ``abandon()``
    never deletes; the message becomes visible again once its visibility
    timeout expires. Used as a context manager, the handle abandons the
    message on exit unless it was acknowledged inside the block.
    """

    def __init__(
        self,
        sqs_client: SQSClient,
        queue_url: str,
        message_id: str,
        receipt_handle: str,
        policy: BackoffPolicy,
        logger: Logger,
    ):
        self._sqs = sqs_client
        self._queue_url = queue_url
        self.message_id = message_id
        self.receipt_handle = receipt_handle
        self._policy = policy
        self._logger = logger
        self._lock = threading.Lock()
        self._completed = False

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def acknowledge(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Deletes the message from the queue.

        Raises:
            AcknowledgeMaxRetryError: If the delete kept failing. The message
                                      stays in the queue and will be redelivered.
        """
        with self._lock:
            if self._completed:
                self._logger.debug("Message already completed.", extra={"message_id": self.message_id})
                return
            core.delete_message_with_retry(
                self._sqs,
                self._queue_url,
                self.receipt_handle,
                self.message_id,
                self._policy,
                cancel or threading.Event(),
                self._logger,
            )
            self._completed = True
        self._logger.info("Completed message.", extra={"message_id": self.message_id})

    def abandon(self) -> None:
        if self.completed:
            return
        self._logger.info(
            "Aborted message, left in queue for redelivery.",
            extra={"message_id": self.message_id, "receipt_handle": self.receipt_handle},
        )

    def __enter__(self) -> "ReceiptHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.abandon()


class SQSReceiver:
    """
    Receives S3 event notifications from an SQS queue, one message per call.

    The queue URL is resolved from the queue name on first use and cached; the
    cache is shared state, so it is guarded by a lock.
    """

    def __init__(
        self,
        sqs_client: SQSClient,
        queue_name: str,
        policy: Optional[BackoffPolicy] = None,
        wait_time_seconds: int = 20,
        visibility_timeout: Optional[int] = None,
        logger: Optional[Logger] = None,
    ):
        self._sqs = sqs_client
        self._policy = policy or BackoffPolicy()
        self._wait_time_seconds = wait_time_seconds
        self._visibility_timeout = visibility_timeout
        self._logger = logger or default_logger()

        self._lock = threading.Lock()
        self._queue_name = queue_name
        self._queue_url: Optional[str] = None

    @property
    def queue_name(self) -> str:
        with self._lock:
            return self._queue_name

    def set_queue_name(self, queue_name: str) -> None:
        """Points the receiver at another queue, dropping the cached URL."""
        with self._lock:
            if queue_name != self._queue_name:
                self._queue_name = queue_name
                self._queue_url = None

    def queue_url(self) -> str:
        """
        Returns the queue URL, resolving it on first use.

        Raises:
            ReceiveError: If the queue name is unset or cannot be resolved.
        """
        with self._lock:
            if self._queue_url is not None:
                return self._queue_url
            if not self._queue_name:
                raise ReceiveError("queue name is not configured")
            self._logger.info(f"Connect to SQS: {self._queue_name}")
            try:
                response = self._sqs.get_queue_url(QueueName=self._queue_name)
            except (ClientError, BotoCoreError) as e:
                raise ReceiveError(f"can not resolve queue url of '{self._queue_name}': {e}") from e
            self._queue_url = response["QueueUrl"]
            self._logger.debug(f"QueueURL is {self._queue_url}")
            return self._queue_url

    def receive(self, cancel: Optional[threading.Event] = None) -> Tuple[List[Locator], ReceiptHandle]:
        """
        Receives at most one message and parses it into source locators.

        Args:
            cancel: Checked before the (long-polling) receive call is made.

        Returns:
            The locators listed in the notification and the message's receipt.

        Raises:
            NoMessageError: If no message was available (or shutdown is requested).
            ReceiveError: If the queue could not be reached.
            ParseError: If the body is not an S3 event notification. The error
                        carries the receipt so the message can be abandoned.
        """
        if cancel is not None and cancel.is_set():
            raise NoMessageError("shutdown requested")
        queue_url = self.queue_url()

        params = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": 1,
            "WaitTimeSeconds": self._wait_time_seconds,
        }
        if self._visibility_timeout is not None:
            params["VisibilityTimeout"] = self._visibility_timeout
        try:
            response = self._sqs.receive_message(**params)
        except (ClientError, BotoCoreError) as e:
            raise ReceiveError(f"receive message from {queue_url} failed: {e}") from e

        messages = response.get("Messages", [])
        if not messages:
            raise NoMessageError(f"no message in {queue_url}")

        msg = messages[0]
        message_id = msg["MessageId"]
        self._logger.info("Received message.", extra={"message_id": message_id})
        self._logger.debug("Message body.", extra={"message_id": message_id, "body": msg.get("Body")})

        receipt = ReceiptHandle(
            self._sqs, queue_url, message_id, msg["ReceiptHandle"], self._policy, self._logger
        )
        try:
            locators = core.parse_notification(msg.get("Body"))
        except core.MalformedNotification as e:
            self._logger.error("Can't parse event from body.", extra={"message_id": message_id, "error": str(e)})
            raise ParseError(f"[{message_id}] {e}", receipt=receipt) from e
        return locators, receipt
