from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from selfheal.fixers.ambiguous_reference import AmbiguousReferenceFixer
from selfheal.fixers.base import FixContext, Fixer, FixerResult
from selfheal.fixers.duplicate_definition import DuplicateDefinitionFixer
from selfheal.fixers.formatter import FormatterFixer
from selfheal.fixers.formatting_rules import FormattingRulesFixer
from selfheal.fixers.lockfile import LockfileFixer
from selfheal.models import FailedJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixerRegistry:
    """
    Fixed priority order. Shell passes run against every failed job; source fixers run
    against the build jobs and feed the AI chain whatever they leave unresolved.
    """

    shell: List[Fixer]
    source: List[Fixer]

    @classmethod
    def default(cls, ctx: FixContext) -> "FixerRegistry":
        return cls(
            shell=[LockfileFixer(ctx), FormatterFixer(ctx)],
            source=[DuplicateDefinitionFixer(ctx), AmbiguousReferenceFixer(ctx), FormattingRulesFixer(ctx)],
        )

    def run_shell(self, jobs: List[FailedJob]) -> FixerResult:
        return _run(self.shell, jobs)

    def run_source(self, jobs: List[FailedJob]) -> FixerResult:
        return _run(self.source, jobs)


def _run(fixers: List[Fixer], jobs: List[FailedJob]) -> FixerResult:
    combined = FixerResult()
    for fixer in fixers:
        if not fixer.can_handle(jobs):
            continue
        logger.info("running fixer: %s", fixer.name)
        combined.merge(fixer.apply(jobs))
    return combined
