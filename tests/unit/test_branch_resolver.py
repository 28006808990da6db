"""Tests for branch -> environment resolution."""

from __future__ import annotations

import pytest

from pipewarden.core.branch_resolver import BranchResolver
from pipewarden.models.config import BranchRule


class TestDefaultRules:
    @pytest.mark.parametrize(
        ("branch", "expected"),
        [
            ("feature/login", ["dev"]),
            ("bugfix/null-check", ["dev"]),
            ("main", ["staging", "production"]),
            ("release/2026.1", ["staging", "production"]),
            ("hotfix/cve-2026-001", ["dev", "staging", "production"]),
            ("refs/heads/main", ["staging", "production"]),
        ],
    )
    def test_resolves(self, branch, expected):
        assert BranchResolver().resolve(branch) == expected

    @pytest.mark.parametrize("branch", ["experiment", "Main", "mainline", "feature"])
    def test_unmatched_deploys_nowhere(self, branch):
        assert BranchResolver().resolve(branch) == []


class TestCustomRules:
    def test_first_match_wins(self):
        resolver = BranchResolver(
            [
                BranchRule(pattern="feature/urgent-*", environments=["staging"]),
                BranchRule(pattern="feature/*", environments=["dev"]),
            ]
        )
        assert resolver.resolve("feature/urgent-fix") == ["staging"]
        assert resolver.resolve("feature/slow") == ["dev"]

    def test_result_is_a_copy(self):
        rule = BranchRule(pattern="*", environments=["dev"])
        resolver = BranchResolver([rule])
        resolver.resolve("anything").append("production")
        assert rule.environments == ["dev"]
