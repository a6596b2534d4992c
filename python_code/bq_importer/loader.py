"""
Submits BigQuery load jobs for staged objects and waits for them to finish.
"""

import concurrent.futures
from typing import Optional

from aws_lambda_powertools import Logger
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery

from .clients import BigQueryClientPool
from .config import default_logger
from .errors import LoadError
from .model import ImportOptions, Job, SourceFormat

_SOURCE_FORMATS = {
    SourceFormat.CSV: bigquery.SourceFormat.CSV,
    SourceFormat.JSON: bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
    SourceFormat.PARQUET: bigquery.SourceFormat.PARQUET,
}


def build_load_config(options: ImportOptions) -> bigquery.LoadJobConfig:
    """
    Translates rule options into a LoadJobConfig.

    Tables are created when missing and rows are appended, so replaying a
    notification after a partial failure never clobbers earlier loads.
    Compressed csv/json objects are detected by BigQuery itself; the gzip
    option only affects how the staged object is labelled.
    """
    source_format = options.source_format or SourceFormat.CSV
    return bigquery.LoadJobConfig(
        source_format=_SOURCE_FORMATS[source_format],
        autodetect=options.autodetect and source_format is not SourceFormat.PARQUET,
        create_disposition=bigquery.CreateDisposition.CREATE_IF_NEEDED,
        write_disposition=bigquery.WriteDisposition.WRITE_APPEND,
    )


class BigQueryLoader:
    """
    Loads staged objects into BigQuery.

    Args:
        clients: Pool of BigQuery clients keyed by project id.
        timeout: Seconds to wait for a submitted job; None waits indefinitely.
        logger: The Powertools Logger instance for structured logging.
    """

    def __init__(self, clients: BigQueryClientPool, timeout: Optional[float] = None, logger: Optional[Logger] = None):
        self._clients = clients
        self._timeout = timeout
        self._logger = logger or default_logger()

    def load(self, job: Job) -> None:
        """
        Submits a load of ``job.staging`` into ``job.destination`` and blocks
        until BigQuery reports a terminal state.

        Raises:
            LoadError: With ``submitted=False`` if the job could not be created,
                       or ``submitted=True`` if it was accepted but failed.
        """
        destination = job.destination
        try:
            client = self._clients.get(destination.project_id)
            load_job = client.load_table_from_uri(
                job.staging.uri,
                str(destination),
                job_config=build_load_config(job.options),
            )
        except (GoogleAPIError, GoogleAuthError) as e:
            raise LoadError(f"create load job into {destination} failed: {e}") from e

        job_id = load_job.job_id
        self._logger.debug(f"create load job succeeded. job_id={job_id}")
        try:
            load_job.result(timeout=self._timeout)
        except (GoogleAPIError, concurrent.futures.TimeoutError) as e:
            raise LoadError(
                f"load job {job_id} into {destination} failed: {e}", submitted=True, job_id=job_id
            ) from e

        self._logger.info(
            "Loaded object.",
            extra={
                "job_id": job_id,
                "staging": job.staging.uri,
                "destination": str(destination),
                "output_rows": getattr(load_job, "output_rows", None),
            },
        )
