"""
Tests for the command-line interface.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from bq_importer.cli import main

CONFIG_YAML = """
queue_name: bq-importer-test
s3:
  bucket: bq-importer.bucket.test
big_query:
  project_id: bq-importer-test
  dataset: test
option:
  temporary_bucket: bq-importer-tmp
  source_format: csv
rules:
  - s3:
      key_prefix: data/user
    big_query:
      table: user
  - s3:
      key_regexp: data/(.+)/snapshot_at=(\\d{8})/.+
    big_query:
      table: $1_$2
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestCheck:
    """Tests for the check command."""

    def test_reports_matches(self, config_file):
        """Test each input URI is reported with its jobs."""
        runner = CliRunner()
        stdin = "\n".join(
            [
                "s3://bq-importer.bucket.test/data/user/snapshot_at=20200210/part-0001.csv",
                "s3://bq-importer.bucket.test/logs/app.log",
                "",
            ]
        )

        result = runner.invoke(main, ["--config", str(config_file), "check"], input=stdin)

        assert result.exit_code == 0, result.output
        lines = [line for line in result.output.splitlines() if line.startswith(("match job", "s3://"))]
        assert lines == [
            "match job: transport from s3://bq-importer.bucket.test/data/user/snapshot_at=20200210/part-0001.csv"
            " to gs://bq-importer-tmp/data/user/snapshot_at=20200210/part-0001.csv,"
            " and load to bq-importer-test.test.user",
            "match job: transport from s3://bq-importer.bucket.test/data/user/snapshot_at=20200210/part-0001.csv"
            " to gs://bq-importer-tmp/data/user/snapshot_at=20200210/part-0001.csv,"
            " and load to bq-importer-test.test.user_20200210",
            "s3://bq-importer.bucket.test/logs/app.log: no match rules",
        ]

    def test_missing_config(self, tmp_path):
        """Test a missing configuration file exits non-zero."""
        runner = CliRunner()

        result = runner.invoke(main, ["--config", str(tmp_path / "missing.yaml"), "check"], input="")

        assert result.exit_code == 1


class TestRequest:
    """Tests for the request command."""

    def test_requires_files(self, config_file):
        runner = CliRunner()

        result = runner.invoke(main, ["--config", str(config_file), "request"])

        assert result.exit_code == 2


class TestVersion:
    def test_version(self):
        runner = CliRunner()

        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "bq-importer" in result.output

    def test_version_command(self):
        runner = CliRunner()

        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert result.output.startswith("bq-importer ")
