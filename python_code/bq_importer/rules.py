"""
Routing rules: which S3 objects are imported, and where they land.

A rule pairs a source matcher (bucket plus either a key prefix or a key regular
expression) with BigQuery destination and staging-bucket templates. Templates
may reference the strings captured by the matcher as ``$0``, ``$1``, ...

Everything in this module is pure: no I/O and no mutable state after
``Rule.validate()``, so routing can be unit-tested without any cloud stubs.
"""

import re
from dataclasses import dataclass, field, replace
from typing import List, Optional, Pattern, Tuple

from .errors import ConfigError
from .model import S3_SCHEME, ImportOptions, Locator, SourceFormat, WarehouseDestination

CaptureGroups = List[str]

_PLACEHOLDER = re.compile(r"\$(\d+)")


def expand_placeholders(template: str, captures: CaptureGroups) -> str:
    """
    Replaces every ``$N`` token in ``template`` with ``captures[N]``.

    Tokens whose index is out of range are left untouched. Substitution is a
    single pass, so text coming from a capture is never expanded again.

    Example:
        >>> expand_placeholders("table_$1_$2", ["data/user/x", "user"])
        'table_user_$2'
    """

    def _substitute(match: "re.Match[str]") -> str:
        index = int(match.group(1))
        if index < len(captures):
            return captures[index]
        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def _trim_separator(key: str) -> str:
    if key.startswith("/"):
        key = key[1:]
    if key.endswith("/"):
        key = key[:-1]
    return key


@dataclass
class S3Source:
    bucket: str = ""
    key_prefix: str = ""
    key_regexp: str = ""
    region: str = ""

    def merge_in(self, other: Optional["S3Source"]) -> "S3Source":
        """Returns a copy where every unset field is taken from ``other``."""
        if other is None:
            return replace(self)
        return S3Source(
            bucket=self.bucket or other.bucket,
            key_prefix=self.key_prefix or other.key_prefix,
            key_regexp=self.key_regexp or other.key_regexp,
            region=self.region or other.region,
        )

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key_prefix or self.key_regexp}"


@dataclass
class DestinationTemplate:
    project_id: str = ""
    dataset: str = ""
    table: str = ""

    def merge_in(self, other: Optional["DestinationTemplate"]) -> "DestinationTemplate":
        if other is None:
            return replace(self)
        return DestinationTemplate(
            project_id=self.project_id or other.project_id,
            dataset=self.dataset or other.dataset,
            table=self.table or other.table,
        )

    def expand(self, captures: CaptureGroups) -> WarehouseDestination:
        return WarehouseDestination(
            project_id=expand_placeholders(self.project_id, captures),
            dataset=expand_placeholders(self.dataset, captures),
            table=expand_placeholders(self.table, captures),
        )

    def __str__(self) -> str:
        return f"{self.project_id}.{self.dataset}.{self.table}"


def merge_options(options: ImportOptions, other: Optional[ImportOptions]) -> ImportOptions:
    if other is None:
        return options
    return ImportOptions(
        temporary_bucket=options.temporary_bucket or other.temporary_bucket,
        gzip=options.gzip if options.gzip is not None else other.gzip,
        auto_detect=options.auto_detect if options.auto_detect is not None else other.auto_detect,
        source_format=options.source_format or other.source_format,
    )


@dataclass
class Rule:
    """
    A single routing rule.

    Rules are built once at configuration load and never mutated afterwards.
    ``validate()`` must succeed before ``match()`` is used; it compiles the key
    regular expression so that a bad pattern fails at startup rather than per
    message.
    """

    s3: S3Source = field(default_factory=S3Source)
    big_query: DestinationTemplate = field(default_factory=DestinationTemplate)
    option: ImportOptions = field(default_factory=ImportOptions)

    _pattern: Optional[Pattern[str]] = field(default=None, init=False, repr=False, compare=False)
    _validated: bool = field(default=False, init=False, repr=False, compare=False)

    def merge_in(self, defaults: Optional["Rule"]) -> "Rule":
        """Returns a new, unvalidated rule with unset fields filled from ``defaults``."""
        if defaults is None:
            return Rule(s3=replace(self.s3), big_query=replace(self.big_query), option=self.option)
        return Rule(
            s3=self.s3.merge_in(defaults.s3),
            big_query=self.big_query.merge_in(defaults.big_query),
            option=merge_options(self.option, defaults.option),
        )

    def validate(self) -> "Rule":
        """
        Checks the rule is complete and compiles its matcher.

        Returns:
            The rule itself, for chaining.

        Raises:
            ConfigError: If a required field is missing, both or neither key
                         matchers are configured, or the regexp does not compile.
        """
        if not self.s3.bucket:
            raise ConfigError(f"rule {self}: s3.bucket is not defined")
        if not self.big_query.project_id:
            raise ConfigError(f"rule {self}: big_query.project_id is not defined")
        if not self.big_query.dataset:
            raise ConfigError(f"rule {self}: big_query.dataset is not defined")
        if not self.big_query.table:
            raise ConfigError(f"rule {self}: big_query.table is not defined")
        if not self.option.temporary_bucket:
            raise ConfigError(f"rule {self}: option.temporary_bucket is not defined")
        if self.option.source_format is None:
            raise ConfigError(f"rule {self}: option.source_format is not defined")
        if self.option.source_format is SourceFormat.PARQUET and self.option.compressed:
            raise ConfigError(f"rule {self}: option.gzip cannot be combined with parquet")

        if self.s3.key_prefix and self.s3.key_regexp:
            raise ConfigError(f"rule {self}: only one of s3.key_prefix and s3.key_regexp may be defined")
        if self.s3.key_regexp:
            try:
                self._pattern = re.compile(self.s3.key_regexp)
            except re.error as e:
                raise ConfigError(f"rule {self}: s3.key_regexp is invalid: {e}") from e
        elif not self.s3.key_prefix:
            raise ConfigError(f"rule {self}: s3.key_prefix or s3.key_regexp is not defined")

        self._validated = True
        return self

    def match(self, locator: Locator) -> Tuple[bool, CaptureGroups]:
        """
        Tests ``locator`` against the rule.

        Returns:
            ``(True, captures)`` on a match, ``(False, [])`` otherwise. For a
            prefix rule ``captures`` is ``[key]``; for a regexp rule it is the
            whole match followed by each group ("" for groups that did not
            participate).
        """
        if not self._validated:
            raise RuntimeError(f"rule {self} must be validated before matching")
        if locator.scheme != S3_SCHEME or locator.bucket != self.s3.bucket:
            return False, []

        key = locator.key
        if self._pattern is None:
            if _trim_separator(key).startswith(self.s3.key_prefix):
                return True, [key]
            return False, []

        found = self._pattern.search(key)
        if found is None:
            return False, []
        return True, [found.group(0)] + [g if g is not None else "" for g in found.groups()]

    def staging_bucket(self, captures: CaptureGroups) -> str:
        return expand_placeholders(self.option.temporary_bucket, captures)

    def destination(self, captures: CaptureGroups) -> WarehouseDestination:
        return self.big_query.expand(captures)

    def __str__(self) -> str:
        return f"{self.s3} => {self.big_query}"
