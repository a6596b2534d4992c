"""
Turns the locators of one notification into import jobs.
"""

from typing import Iterable, List, Optional, Sequence

from aws_lambda_powertools import Logger

from .config import default_logger
from .model import Job, Locator
from .rules import CaptureGroups, Rule


def build_job(rule: Rule, locator: Locator, captures: CaptureGroups) -> Job:
    staging = Locator.gcs(rule.staging_bucket(captures), locator.key)
    return Job(
        source=locator,
        staging=staging,
        destination=rule.destination(captures),
        options=rule.option,
    )


class Resolver:
    """
    Applies an ordered rule set to source locators.

    Every rule is evaluated for every locator (no early exit), so one object
    can fan out to several destinations. Locators matching no rule produce no
    job; that is a normal outcome, not an error.
    """

    def __init__(self, rules: Sequence[Rule], logger: Optional[Logger] = None):
        self._rules = tuple(rules)
        self._logger = logger or default_logger()

    @property
    def rules(self) -> Sequence[Rule]:
        return self._rules

    def resolve(self, locators: Iterable[Locator]) -> List[Job]:
        jobs: List[Job] = []
        for locator in locators:
            matched = False
            for rule in self._rules:
                ok, captures = rule.match(locator)
                if not ok:
                    continue
                matched = True
                job = build_job(rule, locator, captures)
                self._logger.debug(f"Matched rule {rule}", extra={"source": locator.uri, "job": str(job)})
                jobs.append(job)
            if not matched:
                self._logger.debug("No rule matched.", extra={"source": locator.uri})
        return jobs
