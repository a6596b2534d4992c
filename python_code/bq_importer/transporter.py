"""
Copies source objects from S3 into the GCS staging bucket.

The copy is streamed: the S3 response body is read in fixed-size chunks and
written to a resumable GCS upload, so the object is never held in memory in
full.
"""

import hashlib
import shutil
from typing import Optional

from aws_lambda_powertools import Logger
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import storage
from mypy_boto3_s3 import S3Client

from .config import default_logger
from .errors import CleanupError, TransportError
from .model import GCS_SCHEME, S3_SCHEME, Job, Locator

# Resumable upload chunks must be a multiple of 256 KiB.
UPLOAD_CHUNK_SIZE = 32 * 256 * 1024
COPY_BUFFER_SIZE = 1024 * 1024

GZIP_CONTENT_TYPE = "application/gzip"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class HashingStreamWrapper:
    """Wraps a file-like object to compute a SHA256 hash and size on the fly as it is being read."""

    def __init__(self, stream):
        self._stream = stream
        self._hasher = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size=-1):
        chunk = self._stream.read(size)
        if chunk:
            self._hasher.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def hexdigest(self):
        return self._hasher.hexdigest()


class StagingHandle:
    """
    Owns one staged object until it is cleaned up.

    ``cleanup()`` is idempotent: an object that is already gone counts as
    cleaned. Used as a context manager, the handle cleans up on exit whatever
    happened inside the block; a cleanup failure on exit is logged and never
    replaces the outcome of the block.
    """

    def __init__(self, blob: storage.Blob, locator: Locator, logger: Logger):
        self._blob = blob
        self.locator = locator
        self._logger = logger
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def cleanup(self) -> None:
        """
        Deletes the staged object.

        Raises:
            CleanupError: If the delete failed for any reason other than the
                          object being absent.
        """
        if self._released:
            return
        self._logger.debug(f"cleanup {self.locator}")
        try:
            self._blob.delete()
        except NotFound:
            self._logger.debug(f"already cleaned up {self.locator}")
        except GoogleAPIError as e:
            raise CleanupError(f"can not delete temporary object {self.locator}: {e}") from e
        self._released = True

    def __enter__(self) -> "StagingHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            self.cleanup()
        except CleanupError as e:
            self._logger.error("Staged object cleanup failed.", extra={"staging": self.locator.uri, "error": str(e)})


class Transporter:
    """Streams S3 objects into GCS staging objects."""

    def __init__(self, s3_client: S3Client, storage_client: storage.Client, logger: Optional[Logger] = None):
        self._s3 = s3_client
        self._storage = storage_client
        self._logger = logger or default_logger()

    def transport(self, job: Job) -> StagingHandle:
        """
        Copies ``job.source`` to ``job.staging``.

        Returns:
            A handle owning the staged object.

        Raises:
            TransportError: If the source cannot be read, the staging object
                            cannot be written, or the copy fails part way. No
                            handle exists in that case and the partial upload
                            is not finalised.
        """
        source, staging = job.source, job.staging
        if source.scheme != S3_SCHEME:
            raise TransportError(f"source {source} is not an s3 object")
        if staging.scheme != GCS_SCHEME:
            raise TransportError(f"destination {staging} is not a google cloud storage object")

        self._logger.debug(f"try transport from {source} to {staging}")
        try:
            s3_obj = self._s3.get_object(Bucket=source.bucket, Key=source.key)
        except Exception as e:
            raise TransportError(f"get object from {source} failed: {e}") from e

        blob = self._storage.bucket(staging.bucket).blob(staging.key)
        content_type = GZIP_CONTENT_TYPE if job.options.compressed else DEFAULT_CONTENT_TYPE
        try:
            with s3_obj["Body"] as body:
                reader = HashingStreamWrapper(body)
                with blob.open("wb", chunk_size=UPLOAD_CHUNK_SIZE, content_type=content_type) as writer:
                    shutil.copyfileobj(reader, writer, COPY_BUFFER_SIZE)
        except Exception as e:
            raise TransportError(f"copy object from {source} to {staging} failed: {e}") from e

        self._logger.info(
            "Transported object.",
            extra={
                "source": source.uri,
                "staging": staging.uri,
                "bytes": reader.bytes_read,
                "sha256_checksum": reader.hexdigest(),
            },
        )
        return StagingHandle(blob, staging, self._logger)
