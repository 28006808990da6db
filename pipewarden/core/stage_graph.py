"""The stage DAG of one run, with cascade skipping.

The graph enforces:
- No stage runs unless every prerequisite is SUCCESS (or SKIPPED by an
  operator promotion run that reuses an existing artifact).
- When a stage fails, all transitive dependents still pending are SKIPPED.
"""

from __future__ import annotations

from collections import deque

from pipewarden.models.stages import StageDefinition, StageStatus

# Prerequisite statuses that let a dependent start.
SATISFIED_STATUSES: frozenset[StageStatus] = frozenset(
    {StageStatus.SUCCESS, StageStatus.SKIPPED}
)


class PrerequisiteNotMetError(RuntimeError):
    """Raised when a stage cannot run because prerequisites are not met."""


class CyclicDependencyError(ValueError):
    """Raised when the prerequisite graph contains a cycle."""


class StageGraph:
    """Directed acyclic graph of stage prerequisites.

    Built from the run's stage definitions when the run is created.
    """

    def __init__(self, stage_definitions: list[StageDefinition]) -> None:
        self._stages: dict[str, StageDefinition] = {
            sd.stage_id: sd for sd in stage_definitions
        }
        # Forward edges: stage_id -> list of prerequisite stage_ids
        self._prerequisites: dict[str, list[str]] = {
            sd.stage_id: list(sd.prerequisites) for sd in stage_definitions
        }
        # Reverse edges: stage_id -> list of stages that depend on it
        self._dependents: dict[str, list[str]] = {
            sd.stage_id: [] for sd in stage_definitions
        }
        for sd in stage_definitions:
            for prereq in sd.prerequisites:
                if prereq in self._dependents:
                    self._dependents[prereq].append(sd.stage_id)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm, ties broken by ordinal."""
        in_degree = {sid: len(prereqs) for sid, prereqs in self._prerequisites.items()}
        queue = deque(
            sorted(
                (sid for sid, deg in in_degree.items() if deg == 0),
                key=lambda s: self._stages[s].ordinal,
            )
        )
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(
                self._dependents.get(node, []),
                key=lambda s: self._stages[s].ordinal,
            ):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._stages):
            raise CyclicDependencyError(
                f"Prerequisite graph has a cycle. "
                f"Visited {len(result)}/{len(self._stages)} stages."
            )
        return result

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        """Return all stage_ids in topological order."""
        return list(self._order)

    def get_prerequisites(self, stage_id: str) -> list[str]:
        """Return direct prerequisite stage_ids for a stage."""
        return list(self._prerequisites.get(stage_id, []))

    def get_dependents(self, stage_id: str) -> list[str]:
        """Return all transitive dependent stage_ids (BFS)."""
        result = []
        queue = deque(self._dependents.get(stage_id, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def get_stage_definition(self, stage_id: str) -> StageDefinition:
        return self._stages[stage_id]

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    # ------------------------------------------------------------------
    # Prerequisite checking
    # ------------------------------------------------------------------

    def are_prerequisites_met(self, stage_id: str, states: dict[str, StageStatus]) -> bool:
        return all(
            states.get(prereq) in SATISFIED_STATUSES
            for prereq in self._prerequisites.get(stage_id, [])
        )

    def get_blocking_reasons(self, stage_id: str, states: dict[str, StageStatus]) -> list[str]:
        """Return human-readable reasons why a stage cannot start."""
        reasons = []
        for prereq in self._prerequisites.get(stage_id, []):
            state = states.get(prereq, StageStatus.PENDING)
            if state not in SATISFIED_STATUSES:
                name = self._stages[prereq].display_name if prereq in self._stages else prereq
                reasons.append(f"{name} ({prereq}) is {state.value}")
        return reasons

    def cascade_skip(self, failed_stage_id: str, states: dict[str, StageStatus]) -> list[str]:
        """Return the transitive dependents of a failed stage that are still pending."""
        return [
            stage_id
            for stage_id in self.get_dependents(failed_stage_id)
            if states.get(stage_id, StageStatus.PENDING) == StageStatus.PENDING
        ]
