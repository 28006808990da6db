"""Branch -> target environment resolution.

Rules are ordered glob patterns; the first one matching the branch name
decides.  A branch no rule matches deploys nowhere: its run ends after
build, test and scan.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from fnmatch import fnmatchcase

from pipewarden.models.config import DEFAULT_BRANCH_RULES, BranchRule

logger = logging.getLogger(__name__)


class BranchResolver:
    def __init__(self, rules: Iterable[BranchRule] = DEFAULT_BRANCH_RULES) -> None:
        self.rules = list(rules)

    def resolve(self, branch: str) -> list[str]:
        """Return the ordered environments for *branch* (empty if unmatched)."""
        name = branch.removeprefix("refs/heads/")
        for rule in self.rules:
            if fnmatchcase(name, rule.pattern):
                logger.debug("Branch %s matched %s -> %s", name, rule.pattern, rule.environments)
                return list(rule.environments)
        logger.info("Branch %s matches no rule; no deployment targets", name)
        return []
