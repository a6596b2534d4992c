"""Test suite for the S3 to BigQuery importer."""
