"""
Tests for notification parsing and the acknowledge retry loop.
"""

from __future__ import annotations

import json
import random
import threading
from unittest.mock import MagicMock

import pytest
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError, EndpointConnectionError

from bq_importer import core
from bq_importer.errors import AcknowledgeMaxRetryError, ErrorKind
from bq_importer.model import BackoffPolicy, Locator
from tests.fixtures.events import SOURCE_BUCKET, s3_event_body


def _client_error(code: str = "InternalError") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "simulated"}}, "DeleteMessage")


class TestDecodeKey:
    """Tests for decode_key()."""

    def test_plain_key_unchanged(self):
        assert core.decode_key("data/user/part-0001.csv") == "data/user/part-0001.csv"

    def test_plus_is_space(self):
        """Test S3's '+' encoding of spaces."""
        assert core.decode_key("data/my+file.csv") == "data/my file.csv"

    def test_percent_encoding(self):
        """Test percent-encoded characters are decoded."""
        assert core.decode_key("data/snapshot_at%3D20200210/%E3%83%87.csv") == "data/snapshot_at=20200210/デ.csv"

    def test_invalid_utf8_kept_raw(self):
        """Test keys that do not decode to UTF-8 are passed through."""
        assert core.decode_key("data/%ff.csv") == "data/%ff.csv"


class TestParseNotification:
    """Tests for parse_notification()."""

    def test_records_in_order(self):
        """Test one locator per record, in notification order."""
        body = s3_event_body(SOURCE_BUCKET, "data/b.csv", "data/a+1.csv")

        assert core.parse_notification(body) == [
            Locator.s3(SOURCE_BUCKET, "data/b.csv"),
            Locator.s3(SOURCE_BUCKET, "data/a 1.csv"),
        ]

    def test_test_event_has_no_locators(self):
        """Test the s3:TestEvent sent on notification setup yields nothing."""
        body = json.dumps({"Service": "Amazon S3", "Event": "s3:TestEvent", "Bucket": SOURCE_BUCKET})
        assert core.parse_notification(body) == []

    @pytest.mark.parametrize(
        "body",
        [
            None,
            "not json",
            "[1, 2]",
            json.dumps({"Records": {"s3": {}}}),
            json.dumps({"Records": [{"s3": {"bucket": {"name": "b"}}}]}),
            json.dumps({"Records": ["oops"]}),
        ],
    )
    def test_malformed(self, body):
        """Test bodies that are not S3 event notifications."""
        with pytest.raises(core.MalformedNotification):
            core.parse_notification(body)


class TestBackoffDelay:
    """Tests for backoff_delay()."""

    def test_exponential_growth(self):
        """Test the delay doubles per retry without jitter."""
        policy = BackoffPolicy(interval=0.5, jitter_factor=0.0)
        assert [core.backoff_delay(policy, n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_jitter_bounds(self):
        """Test jitter stays within ±jitter_factor of the delay."""
        policy = BackoffPolicy(interval=0.5, jitter_factor=0.05)
        rng = random.Random(42)
        for attempt in range(5):
            base = 0.5 * 2**attempt
            for _ in range(20):
                delay = core.backoff_delay(policy, attempt, rng)
                assert base * 0.95 <= delay <= base * 1.05


class TestDeleteMessageWithRetry:
    """Tests for delete_message_with_retry()."""

    @pytest.fixture
    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(interval=0, jitter_factor=0, max_retries=5)

    @pytest.fixture
    def logger(self) -> Logger:
        return Logger(service="bq-importer-test")

    def _delete(self, sqs, policy, logger, cancel=None):
        core.delete_message_with_retry(
            sqs, "https://queue", "receipt-1", "msg-1", policy, cancel or threading.Event(), logger
        )

    def test_first_attempt_succeeds(self, policy, logger):
        sqs = MagicMock()

        self._delete(sqs, policy, logger)

        sqs.delete_message.assert_called_once_with(QueueUrl="https://queue", ReceiptHandle="receipt-1")

    def test_recovers_after_transient_failures(self, policy, logger):
        """Test transient errors are retried until the delete succeeds."""
        sqs = MagicMock()
        sqs.delete_message.side_effect = [_client_error(), EndpointConnectionError(endpoint_url="x"), {}]

        self._delete(sqs, policy, logger)

        assert sqs.delete_message.call_count == 3

    def test_persistent_failure_makes_bound_plus_one_calls(self, policy, logger):
        """Test the delete is attempted max_retries + 1 times before giving up."""
        sqs = MagicMock()
        sqs.delete_message.side_effect = _client_error()

        with pytest.raises(AcknowledgeMaxRetryError) as exc_info:
            self._delete(sqs, policy, logger)

        assert sqs.delete_message.call_count == 6
        assert exc_info.value.kind is ErrorKind.ACKNOWLEDGE_MAX_RETRY
        assert "msg-1" in str(exc_info.value)

    def test_cancel_interrupts_backoff(self, policy, logger):
        """Test a shutdown request stops the retry loop at the next wait."""
        sqs = MagicMock()
        sqs.delete_message.side_effect = _client_error()
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(AcknowledgeMaxRetryError, match="shutdown"):
            self._delete(sqs, policy, logger, cancel)

        assert sqs.delete_message.call_count == 1

    def test_waits_use_backoff_schedule(self, logger):
        """Test each retry waits the exponential delay on the cancel event."""
        policy = BackoffPolicy(interval=0.5, jitter_factor=0, max_retries=3)
        sqs = MagicMock()
        sqs.delete_message.side_effect = _client_error()
        cancel = MagicMock()
        cancel.wait.return_value = False

        with pytest.raises(AcknowledgeMaxRetryError):
            self._delete(sqs, policy, logger, cancel)

        assert [c.args[0] for c in cancel.wait.call_args_list] == [0.5, 1.0, 2.0]
        assert sqs.delete_message.call_count == 4


class TestEmitMetrics:
    """Tests for emit_metrics()."""

    def test_emits_embedded_metric_format(self, capsys):
        """Test the cycle outcome and numeric payload values are flushed as one EMF record."""
        core.emit_metrics(
            "BqImporterTest",
            "test",
            "CycleSuccess",
            {"message_id": "msg-1", "jobs_total": 2, "jobs_loaded": 2, "latency_ms": 15},
        )

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        directive = record["_aws"]["CloudWatchMetrics"][0]
        units = {m["Name"]: m["Unit"] for m in directive["Metrics"]}

        assert directive["Namespace"] == "BqImporterTest"
        assert record["environment"] == "test"
        assert units == {
            "CycleSuccess": "Count",
            "jobs_total": "Count",
            "jobs_loaded": "Count",
            "latency_ms": "Milliseconds",
        }
        assert "message_id" not in units
