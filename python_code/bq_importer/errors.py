"""
Error taxonomy for the importer.

Every error raised by a pipeline step derives from ``ImporterError`` and exposes
a ``kind`` discriminator, so callers branch on the classification of a failure
instead of on exception identity.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .receiver import ReceiptHandle


class ErrorKind(str, Enum):
    NO_MESSAGE = "NoMessage"
    RECEIVE = "ReceiveError"
    PARSE = "ParseError"
    TRANSPORT = "TransportError"
    LOAD = "LoadError"
    CLEANUP = "CleanupError"
    ACKNOWLEDGE_MAX_RETRY = "AcknowledgeMaxRetryError"
    CONFIG = "ConfigError"


class ImporterError(Exception):
    """Base class for all classified importer failures."""

    _kind: ErrorKind

    @property
    def kind(self) -> ErrorKind:
        return self._kind


class NoMessageError(ImporterError):
    """The queue had no message to deliver. Expected, never fatal."""

    _kind = ErrorKind.NO_MESSAGE


class ReceiveError(ImporterError):
    _kind = ErrorKind.RECEIVE


class ParseError(ImporterError):
    """
    The notification body could not be parsed.

    The receipt of the offending message travels with the error so the caller
    can abandon it for redelivery.
    """

    _kind = ErrorKind.PARSE

    def __init__(self, message: str, receipt: Optional["ReceiptHandle"] = None):
        super().__init__(message)
        self.receipt = receipt


class TransportError(ImporterError):
    _kind = ErrorKind.TRANSPORT


class LoadError(ImporterError):
    """
    A BigQuery load failed.

    Attributes:
        submitted: False when the load job could not be created at all, True
                   when BigQuery accepted the job but it ended in an error state.
        job_id: The BigQuery job id, when the job was submitted.
    """

    _kind = ErrorKind.LOAD

    def __init__(self, message: str, submitted: bool = False, job_id: Optional[str] = None):
        super().__init__(message)
        self.submitted = submitted
        self.job_id = job_id


class CleanupError(ImporterError):
    _kind = ErrorKind.CLEANUP


class AcknowledgeMaxRetryError(ImporterError):
    """Deleting the message kept failing; it stays in the queue for redelivery."""

    _kind = ErrorKind.ACKNOWLEDGE_MAX_RETRY


class ConfigError(ImporterError, ValueError):
    _kind = ErrorKind.CONFIG
