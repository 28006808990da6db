"""Tests for the StageGraph — per-run DAG, ordering, cascades."""

from __future__ import annotations

import pytest

from pipewarden.core.stage_graph import CyclicDependencyError, StageGraph
from pipewarden.models.stages import (
    StageDefinition,
    StageKind,
    StageStatus,
    build_stage_definitions,
)


class TestBuildStageDefinitions:
    def test_no_environments_is_the_head_only(self):
        ids = [d.stage_id for d in build_stage_definitions([])]
        assert ids == ["validate", "build", "test", "scan"]

    def test_deploy_verify_pair_per_environment(self):
        ids = [d.stage_id for d in build_stage_definitions(["staging", "production"])]
        assert ids[4:] == [
            "deploy:staging",
            "verify:staging",
            "deploy:production",
            "verify:production",
        ]

    def test_each_deploy_waits_on_previous_verify(self):
        defs = {d.stage_id: d for d in build_stage_definitions(["staging", "production"])}
        assert defs["deploy:staging"].prerequisites == ["test", "scan"]
        assert defs["deploy:production"].prerequisites == ["verify:staging"]
        assert defs["verify:production"].prerequisites == ["deploy:production"]


class TestStageGraph:
    @pytest.fixture
    def graph(self) -> StageGraph:
        return StageGraph(build_stage_definitions(["dev"]))

    def test_topological_order(self, graph: StageGraph):
        assert graph.stage_ids == ["validate", "build", "test", "scan", "deploy:dev", "verify:dev"]

    def test_test_and_scan_share_build(self, graph: StageGraph):
        assert graph.get_prerequisites("test") == ["build"]
        assert graph.get_prerequisites("scan") == ["build"]

    def test_transitive_dependents(self, graph: StageGraph):
        assert set(graph.get_dependents("build")) == {"test", "scan", "deploy:dev", "verify:dev"}

    def test_prerequisites_met_only_when_all_succeed(self, graph: StageGraph):
        states = {"test": StageStatus.SUCCESS, "scan": StageStatus.RUNNING}
        assert graph.are_prerequisites_met("deploy:dev", states) is False
        states["scan"] = StageStatus.SUCCESS
        assert graph.are_prerequisites_met("deploy:dev", states) is True

    def test_skipped_prerequisite_counts_as_satisfied(self, graph: StageGraph):
        """Operator promotion runs skip the head stages and reuse an artifact."""
        states = {"test": StageStatus.SKIPPED, "scan": StageStatus.SKIPPED}
        assert graph.are_prerequisites_met("deploy:dev", states) is True

    def test_blocking_reasons_name_the_stage(self, graph: StageGraph):
        reasons = graph.get_blocking_reasons("deploy:dev", {"test": StageStatus.FAILED})
        assert any("test" in r and "failed" in r for r in reasons)
        assert any("scan" in r and "pending" in r for r in reasons)

    def test_cascade_skip_only_pending(self, graph: StageGraph):
        states = {
            "test": StageStatus.FAILED,
            "scan": StageStatus.SUCCESS,
            "deploy:dev": StageStatus.PENDING,
            "verify:dev": StageStatus.PENDING,
        }
        assert graph.cascade_skip("test", states) == ["deploy:dev", "verify:dev"]

    def test_contains(self, graph: StageGraph):
        assert "deploy:dev" in graph
        assert "deploy:production" not in graph

    def test_cycle_rejected(self):
        defs = [
            StageDefinition(
                stage_id="a", kind=StageKind.BUILD, display_name="A", ordinal=0, prerequisites=["b"]
            ),
            StageDefinition(
                stage_id="b", kind=StageKind.TEST, display_name="B", ordinal=1, prerequisites=["a"]
            ),
        ]
        with pytest.raises(CyclicDependencyError):
            StageGraph(defs)
