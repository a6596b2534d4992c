"""
Data models for the S3 to BigQuery importer.

This module defines the core data structures passed between the receiver,
resolver, transporter and loader. Using dataclasses, enums and TypedDicts keeps
the data contracts explicit, statically checked by mypy, and self-documenting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, TypedDict
from urllib.parse import urlsplit

S3_SCHEME = "s3"
GCS_SCHEME = "gs"


class S3EventBucket(TypedDict):
    name: str


class S3EventObject(TypedDict):
    key: str


class S3EventEntity(TypedDict):
    bucket: S3EventBucket
    object: S3EventObject


class S3EventRecord(TypedDict):
    """
    Represents a single record of an S3 "object created" notification.

    Only the attributes read by this application are declared; the notification
    carries many more (eventName, eventTime, requestParameters, ...).
    """

    s3: S3EventEntity


class SourceFormat(str, Enum):
    """File formats a staged object may be loaded as."""

    CSV = "csv"
    JSON = "json"
    PARQUET = "parquet"

    @classmethod
    def parse(cls, value: str) -> "SourceFormat":
        try:
            return cls(value.lower())
        except ValueError:
            supported = ", ".join(f.value for f in cls)
            raise ValueError(f"source_format '{value}' is not supported (supported: {supported})") from None


@dataclass(frozen=True)
class Locator:
    """
    A scheme-qualified object address, e.g. ``s3://bucket/path/to/key``.

    Locators are immutable once produced from a notification. The key never
    carries a leading slash.
    """

    scheme: str
    bucket: str
    key: str

    @classmethod
    def parse(cls, uri: str) -> "Locator":
        parts = urlsplit(uri)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"'{uri}' is not a scheme-qualified object URI")
        return cls(scheme=parts.scheme, bucket=parts.netloc, key=parts.path.lstrip("/"))

    @classmethod
    def s3(cls, bucket: str, key: str) -> "Locator":
        return cls(scheme=S3_SCHEME, bucket=bucket, key=key)

    @classmethod
    def gcs(cls, bucket: str, key: str) -> "Locator":
        return cls(scheme=GCS_SCHEME, bucket=bucket, key=key)

    @property
    def uri(self) -> str:
        return f"{self.scheme}://{self.bucket}/{self.key}"

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class WarehouseDestination:
    """A fully expanded BigQuery table reference."""

    project_id: str
    dataset: str
    table: str

    def __str__(self) -> str:
        return f"{self.project_id}.{self.dataset}.{self.table}"


@dataclass(frozen=True)
class ImportOptions:
    """
    Per-rule load options.

    Attributes:
        temporary_bucket: GCS staging bucket. May contain ``$N`` placeholders
                          while it still belongs to a rule; a Job always holds
                          the expanded name.
        gzip: The source objects are gzip compressed.
        auto_detect: Ask BigQuery to infer the schema (csv and json only).
        source_format: Format the staged object is loaded as.
    """

    temporary_bucket: str = ""
    gzip: Optional[bool] = None
    auto_detect: Optional[bool] = None
    source_format: Optional[SourceFormat] = None

    @property
    def compressed(self) -> bool:
        return bool(self.gzip)

    @property
    def autodetect(self) -> bool:
        return bool(self.auto_detect)


@dataclass(frozen=True)
class Job:
    """
    One unit of work: copy ``source`` to ``staging`` and load it into
    ``destination``. Produced by the resolver, discarded after the cycle.
    """

    source: Locator
    staging: Locator
    destination: WarehouseDestination
    options: ImportOptions

    def __str__(self) -> str:
        return f"transport from {self.source} to {self.staging}, and load to {self.destination}"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry schedule for acknowledging a message.

    The n-th retry (0-based) waits ``interval * 2**n`` seconds, spread by
    ``±jitter_factor`` of that delay. After ``max_retries`` failed retries the
    acknowledgement is given up.
    """

    interval: float = 0.5
    jitter_factor: float = 0.05
    max_retries: int = 5


class CycleOutcome(str, Enum):
    NO_MESSAGE = "NoMessage"
    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    ABORTED = "Aborted"


@dataclass
class CycleResult:
    """
    The outcome of one receive → resolve → transport → load → acknowledge cycle.

    Attributes:
        outcome: The terminal state reached by the cycle.
        message_id: The SQS message id, when a message was received.
        jobs_total: Number of jobs resolved from the message.
        jobs_loaded: Number of jobs whose load completed successfully.
        error: The error that stopped the cycle, for failed outcomes.
    """

    outcome: CycleOutcome
    message_id: Optional[str] = None
    jobs_total: int = 0
    jobs_loaded: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (CycleOutcome.SUCCESS, CycleOutcome.NO_MESSAGE)


@dataclass
class RunStats:
    """Counters accumulated by the importer run loop."""

    cycles: int = 0
    succeeded: int = 0
    failed: int = 0
    jobs_loaded: int = 0
    outcomes: List[CycleOutcome] = field(default_factory=list)

    def record(self, result: CycleResult) -> None:
        if result.outcome is CycleOutcome.NO_MESSAGE:
            return
        self.cycles += 1
        self.jobs_loaded += result.jobs_loaded
        self.outcomes.append(result.outcome)
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1
