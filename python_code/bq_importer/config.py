"""
Configuration loading for the importer.

Process-level settings come from environment variables and fail fast when a
required one is missing. The routing rules and cloud endpoints live in a YAML
file whose string values may reference environment variables as ``${NAME}``.

Example config.yaml::

    queue_name: bq-importer
    cloud:
      aws:
        region: ap-northeast-1
      gcp:
        credential_secret_id: bq-importer/gcp
    s3:
      bucket: example-logs
    big_query:
      project_id: ${GCP_PROJECT_ID}
      dataset: logs
    option:
      temporary_bucket: example-import-tmp
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

The top-level ``s3``, ``big_query`` and ``option`` sections are defaults merged
into every rule; values set on a rule win.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from aws_lambda_powertools import Logger

from .errors import ConfigError
from .model import BackoffPolicy, ImportOptions, SourceFormat
from .rules import DestinationTemplate, Rule, S3Source

SERVICE_NAME = "bq-importer"

_ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ConfigError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ConfigError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ConfigError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def default_logger() -> Logger:
    return Logger(service=SERVICE_NAME)


@dataclass
class AWSConfig:
    region: str = ""
    s3_endpoint: str = ""
    sqs_endpoint: str = ""
    secretsmanager_endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""


@dataclass
class GCPConfig:
    """
    Google Cloud client settings.

    Attributes:
        project_id: Project billed for API calls when a rule does not imply one.
        without_authentication: Use anonymous credentials (emulators only).
        big_query_endpoint: Override of the BigQuery API endpoint.
        cloud_storage_endpoint: Override of the Cloud Storage API endpoint.
        credential: Base64-encoded service account JSON.
        credential_secret_id: Secrets Manager secret holding the service
                              account JSON. Takes precedence over ``credential``.
    """

    project_id: str = ""
    without_authentication: bool = False
    big_query_endpoint: str = ""
    cloud_storage_endpoint: str = ""
    credential: str = ""
    credential_secret_id: str = ""


@dataclass
class CloudConfig:
    aws: AWSConfig = field(default_factory=AWSConfig)
    gcp: GCPConfig = field(default_factory=GCPConfig)


@dataclass
class Config:
    queue_name: str = ""
    wait_time_seconds: int = 20
    visibility_timeout: Optional[int] = None
    cloud: CloudConfig = field(default_factory=CloudConfig)
    acknowledge_backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    rules: List[Rule] = field(default_factory=list)


@dataclass
class Settings:
    """Process-level settings, read once at start-up."""

    config_path: str
    log_level: str = "INFO"
    environment: str = "dev"
    queue_name: Optional[str] = None
    metrics_namespace: str = "BqImporter"
    secret_cache_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            config_path=get_env_var("CONFIG_PATH", "config.yaml"),
            log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
            environment=get_env_var("ENVIRONMENT", "dev"),
            queue_name=os.environ.get("QUEUE_NAME") or None,
            metrics_namespace=get_env_var("METRICS_NAMESPACE", "BqImporter"),
            secret_cache_ttl_seconds=int(get_env_var("SECRET_CACHE_TTL_SECONDS", "300")),
        )


def resolve_env(value: Any) -> Any:
    """Recursively substitutes ``${NAME}`` references with environment values."""
    if isinstance(value, dict):
        return {k: resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env(item) for item in value]
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(lambda m: get_env_var(m.group(1)), value)
    return value


def _build(cls, data: Optional[Dict[str, Any]], section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls) if f.init}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"'{section}' has unknown keys: {', '.join(sorted(unknown))}")
    return cls(**data)


def _build_options(data: Optional[Dict[str, Any]], section: str) -> ImportOptions:
    data = dict(data or {})
    source_format = data.pop("source_format", None)
    options = _build(ImportOptions, data, section)
    if source_format:
        try:
            options = ImportOptions(
                temporary_bucket=options.temporary_bucket,
                gzip=options.gzip,
                auto_detect=options.auto_detect,
                source_format=SourceFormat.parse(str(source_format)),
            )
        except ValueError as e:
            raise ConfigError(f"'{section}': {e}") from e
    return options


def _build_rule(data: Dict[str, Any], section: str) -> Rule:
    if not isinstance(data, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(data).__name__}")
    unknown = set(data) - {"s3", "big_query", "option"}
    if unknown:
        raise ConfigError(f"'{section}' has unknown keys: {', '.join(sorted(unknown))}")
    return Rule(
        s3=_build(S3Source, data.get("s3"), f"{section}.s3"),
        big_query=_build(DestinationTemplate, data.get("big_query"), f"{section}.big_query"),
        option=_build_options(data.get("option"), f"{section}.option"),
    )


def merged_rules(defaults: Rule, rules: List[Rule], logger: Optional[Logger] = None) -> List[Rule]:
    """
    Merges ``defaults`` into each rule and validates the result.

    Raises:
        ConfigError: If any merged rule is invalid.
    """
    logger = logger or default_logger()
    merged = []
    for rule in rules:
        rule = rule.merge_in(defaults).validate()
        if rule.option.autodetect and rule.option.source_format is SourceFormat.PARQUET:
            logger.info(f"auto_detect works only when source_format is csv or json: {rule}")
        merged.append(rule)
    return merged


def parse_config(data: Dict[str, Any], logger: Optional[Logger] = None) -> Config:
    """
    Builds a validated Config from already-parsed YAML data.

    Raises:
        ConfigError: If the structure is invalid or a rule fails validation.
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")
    data = resolve_env(data)

    cloud = data.get("cloud") or {}
    if not isinstance(cloud, dict):
        raise ConfigError("'cloud' must be a mapping")
    defaults = _build_rule(
        {k: data[k] for k in ("s3", "big_query", "option") if data.get(k) is not None},
        "defaults",
    )
    rules = [_build_rule(r, f"rules[{i}]") for i, r in enumerate(data.get("rules") or [])]
    if not rules:
        raise ConfigError("'rules' must contain at least one rule")

    visibility_timeout = data.get("visibility_timeout")
    return Config(
        queue_name=str(data.get("queue_name") or ""),
        wait_time_seconds=int(data.get("wait_time_seconds", 20)),
        visibility_timeout=int(visibility_timeout) if visibility_timeout is not None else None,
        cloud=CloudConfig(
            aws=_build(AWSConfig, cloud.get("aws"), "cloud.aws"),
            gcp=_build(GCPConfig, cloud.get("gcp"), "cloud.gcp"),
        ),
        acknowledge_backoff=_build(BackoffPolicy, data.get("acknowledge_backoff"), "acknowledge_backoff"),
        rules=merged_rules(defaults, rules, logger),
    )


def load_config(path: Union[str, Path], logger: Optional[Logger] = None) -> Config:
    """
    Loads and validates the YAML configuration file at ``path``.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails validation.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return parse_config(data, logger)
