"""
Orchestrator and AWS Lambda entry point for the importer.

This module wires the pipeline steps together. Its responsibilities include:
  - Running one receive → resolve → transport → load → acknowledge cycle.
  - Running cycles in a loop until the queue is drained, a deadline passes,
    or shutdown is requested.
  - Building the production importer from settings and configuration.
  - Serving as a scheduled Lambda handler that drains the queue.
  - Managing the overall success/failure state and emitting cycle metrics.
"""

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from aws_lambda_powertools import Logger

from . import clients, core
from .config import SERVICE_NAME, Config, Settings, default_logger, get_env_var, load_config
from .errors import ImporterError, NoMessageError, ParseError, ReceiveError
from .loader import BigQueryLoader
from .model import CycleOutcome, CycleResult, Job, Locator, RunStats
from .protocols import MessageSource, ObjectCopier, Router, WarehouseLoader
from .receiver import SQSReceiver
from .resolver import Resolver
from .transporter import Transporter

SHUTDOWN_POLL_INTERVAL_SECONDS = 0.5


class Importer:
    """
    Runs import cycles over four injected collaborators.

    A cycle acknowledges its message only after every job resolved from it has
    been transported, loaded and cleaned up. Any failure leaves the message in
    the queue, so the whole cycle is replayed on redelivery; staging objects
    are overwritten and loads append, which makes the replay safe.

    Messages whose objects match no rule are acknowledged: the notification
    was understood and deliberately has no route.
    """

    def __init__(
        self,
        source: MessageSource,
        router: Router,
        copier: ObjectCopier,
        loader: WarehouseLoader,
        logger: Optional[Logger] = None,
        environment: str = "dev",
        metrics_namespace: Optional[str] = None,
    ):
        self.source = source
        self.router = router
        self.copier = copier
        self.loader = loader
        self._logger = logger or default_logger()
        self._environment = environment
        self._metrics_namespace = metrics_namespace

        self._lock = threading.Lock()
        self._alive = False
        self._stop = threading.Event()

    @property
    def alive(self) -> bool:
        with self._lock:
            return self._alive

    def resolve(self, locators: Iterable[Locator]) -> List[Job]:
        return self.router.resolve(locators)

    def run_one_cycle(self, cancel: Optional[threading.Event] = None) -> CycleResult:
        """
        Processes at most one message.

        Returns:
            A CycleResult; failures are reported through it, not raised.
        """
        start = time.monotonic()
        try:
            locators, receipt = self.source.receive(cancel)
        except NoMessageError:
            return CycleResult(CycleOutcome.NO_MESSAGE)
        except ParseError as e:
            message_id = None
            if e.receipt is not None:
                message_id = e.receipt.message_id
                e.receipt.abandon()
            return self._finish(CycleResult(CycleOutcome.ABORTED, message_id=message_id, error=e), start)
        except ImporterError as e:
            self._logger.error("Receive failed.", extra={"kind": e.kind.value, "error": str(e)})
            return self._finish(CycleResult(CycleOutcome.ABORTED, error=e), start)

        result = CycleResult(CycleOutcome.SUCCESS, message_id=receipt.message_id)
        self._logger.append_keys(message_id=receipt.message_id)
        try:
            with receipt:
                jobs = self.router.resolve(locators)
                result.jobs_total = len(jobs)
                if not jobs:
                    self._logger.warning(
                        "No rule matched; acknowledging unrouted message.",
                        extra={"sources": [loc.uri for loc in locators]},
                    )
                try:
                    for job in jobs:
                        self._run_job(job)
                        result.jobs_loaded += 1
                    receipt.acknowledge(cancel)
                except ImporterError as e:
                    result.error = e
                    result.outcome = CycleOutcome.PARTIAL_FAILURE if result.jobs_loaded else CycleOutcome.ABORTED
        finally:
            self._logger.remove_keys(["message_id"])
        return self._finish(result, start)

    def _run_job(self, job: Job) -> None:
        try:
            with self.copier.transport(job):
                self.loader.load(job)
        except ImporterError as e:
            self._logger.error(
                "Job failed.",
                extra={
                    "kind": e.kind.value,
                    "source": job.source.uri,
                    "staging": job.staging.uri,
                    "destination": str(job.destination),
                    "error": str(e),
                },
            )
            raise

    def _finish(self, result: CycleResult, start: float) -> CycleResult:
        latency_ms = int((time.monotonic() - start) * 1000)
        payload: Dict[str, Any] = {
            "message_id": result.message_id,
            "jobs_total": result.jobs_total,
            "jobs_loaded": result.jobs_loaded,
            "latency_ms": latency_ms,
        }
        if result.error is not None:
            payload["error_type"] = type(result.error).__name__
            payload["error_message"] = str(result.error)
            self._logger.error(f"Cycle finished: {result.outcome.value}", extra=payload)
        else:
            self._logger.info(f"Cycle finished: {result.outcome.value}", extra=payload)
        if self._metrics_namespace:
            core.emit_metrics(self._metrics_namespace, self._environment, f"Cycle{result.outcome.value}", payload)
        return result

    def process_notification(self, body: str) -> int:
        """
        Imports the objects of a notification body without touching the queue.

        Used to replay saved messages (for example from a dead-letter queue).

        Returns:
            The number of jobs loaded.

        Raises:
            ParseError: If the body is malformed.
            TransportError, LoadError: If a job fails; later jobs are skipped.
        """
        try:
            locators = core.parse_notification(body)
        except core.MalformedNotification as e:
            raise ParseError(str(e)) from e
        jobs = self.resolve(locators)
        if not jobs:
            self._logger.warning("No rule matched.", extra={"sources": [loc.uri for loc in locators]})
        for job in jobs:
            self._run_job(job)
        return len(jobs)

    def run(
        self,
        cancel: Optional[threading.Event] = None,
        exit_on_no_message: bool = False,
        exit_on_error: bool = False,
        deadline: Optional[float] = None,
        idle_seconds: float = 1.0,
    ) -> RunStats:
        """
        Runs cycles until told to stop.

        Cancellation is observed between cycles; an in-flight cycle always
        completes so no staged object is orphaned.

        Args:
            cancel: Stops the loop when set. ``shutdown()`` sets it as well.
            exit_on_no_message: Return once the queue is empty.
            exit_on_error: Raise the error of the first failed cycle.
            deadline: ``time.monotonic()`` value after which no new cycle starts.
            idle_seconds: Pause after an empty receive or a receive error.

        Returns:
            Counters for the cycles that processed a message.
        """
        with self._lock:
            if self._alive:
                raise RuntimeError("importer is already running")
            self._alive = True
            self._stop = cancel or threading.Event()
            stop = self._stop

        stats = RunStats()
        self._logger.info("Starting up importer worker")
        try:
            while not stop.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    self._logger.info("Deadline reached, stopping.")
                    break
                result = self.run_one_cycle(stop)
                stats.record(result)
                if result.outcome is CycleOutcome.NO_MESSAGE:
                    if exit_on_no_message:
                        break
                    stop.wait(idle_seconds)
                    continue
                if result.error is not None:
                    if exit_on_error:
                        raise result.error
                    if isinstance(result.error, ReceiveError):
                        stop.wait(idle_seconds)
            return stats
        finally:
            with self._lock:
                self._alive = False
            self._logger.info("Shutdown importer worker", extra={"cycles": stats.cycles, "failed": stats.failed})

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Asks the run loop to stop and waits for the current cycle to finish.

        Returns:
            True if the loop stopped, False if ``timeout`` passed first.
        """
        with self._lock:
            self._stop.set()
        expires = None if timeout is None else time.monotonic() + timeout
        while self.alive:
            if expires is not None and time.monotonic() >= expires:
                return False
            time.sleep(SHUTDOWN_POLL_INTERVAL_SECONDS)
        return True


def build_importer(settings: Settings, config: Optional[Config] = None, logger: Optional[Logger] = None) -> Importer:
    """Creates an Importer backed by real SQS, S3, Cloud Storage and BigQuery clients."""
    logger = logger or default_logger()
    config = config or load_config(settings.config_path, logger)

    s3, sqs, secrets = clients.get_boto_clients(config.cloud.aws)
    credentials = clients.get_gcp_credentials(config.cloud.gcp, secrets, settings.secret_cache_ttl_seconds)
    storage_client = clients.get_storage_client(config.cloud.gcp, credentials)
    bigquery_clients = clients.BigQueryClientPool(clients.bigquery_client_factory(config.cloud.gcp, credentials))

    return Importer(
        source=SQSReceiver(
            sqs,
            settings.queue_name or config.queue_name,
            policy=config.acknowledge_backoff,
            wait_time_seconds=config.wait_time_seconds,
            visibility_timeout=config.visibility_timeout,
            logger=logger,
        ),
        router=Resolver(config.rules, logger),
        copier=Transporter(s3, storage_client, logger),
        loader=BigQueryLoader(bigquery_clients, logger=logger),
        logger=logger,
        environment=settings.environment,
        metrics_namespace=settings.metrics_namespace,
    )


# --- LAMBDA HANDLER ---

logger = Logger(service=SERVICE_NAME)

_IMPORTER: Optional[Importer] = None


def get_importer(settings: Settings) -> Importer:
    """Builds the importer once per execution environment and reuses it."""
    global _IMPORTER
    if _IMPORTER is None:
        _IMPORTER = build_importer(settings, logger=logger)
    return _IMPORTER


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}


@logger.inject_lambda_context
def handler(event: Dict, context: Any):
    """
    Scheduled Lambda entry point. Drains the queue in batch mode.

    Cycles run until the queue is empty or the remaining invocation time drops
    below ``LAMBDA_SAFETY_MARGIN_SECONDS``; a cycle that has started always
    finishes. Failed cycles are logged and their messages left for redelivery;
    the invocation itself only fails on unexpected errors, which are re-raised.
    """
    start_time = datetime.now(timezone.utc)
    settings = Settings.from_env()
    margin_seconds = float(get_env_var("LAMBDA_SAFETY_MARGIN_SECONDS", "60"))
    deadline = time.monotonic() + context.get_remaining_time_in_millis() / 1000 - margin_seconds

    try:
        stats = get_importer(settings).run(exit_on_no_message=True, deadline=deadline)
    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        error_payload = {"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms}
        core.emit_metrics(settings.metrics_namespace, settings.environment, "Failure", error_payload)
        logger.error(f"Processing failed: {json.dumps(error_payload)}", exc_info=True)
        raise

    latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
    log_payload = {
        "cycles": stats.cycles,
        "succeeded": stats.succeeded,
        "failed": stats.failed,
        "jobs_loaded": stats.jobs_loaded,
        "latency_ms": latency_ms,
    }
    core.emit_metrics(settings.metrics_namespace, settings.environment, "Success", log_payload)
    logger.info("Finished draining queue.", extra=log_payload)
    return _build_response(200, log_payload)
