"""Shared test fixtures for Pipewarden."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from pipewarden.config import ProdConfig
from pipewarden.core.coordinator import PipelineCoordinator
from pipewarden.core.run_ledger import RunLedger
from pipewarden.core.stage_bodies import BodyResult, DryRunStageBody, StageSpec
from pipewarden.core.stage_graph import StageGraph
from pipewarden.core.stage_machine import StageMachine
from pipewarden.core.state_store import StateStore
from pipewarden.models.config import PipelineConfig
from pipewarden.models.runs import PipelineRun, RunStatus
from pipewarden.models.stages import StageKind, build_stage_definitions

# Monday, inside any sensible deployment window.
EPOCH = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """A UTC clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ScriptedBody:
    """A stage body that replays a script of results.

    Each call consumes the next item; the last item repeats once the
    script is exhausted.  Exceptions in the script are raised.
    """

    def __init__(self, *script: BodyResult | Exception) -> None:
        self._script = list(script) or [BodyResult()]
        self._lock = threading.Lock()
        self.calls: list[StageSpec] = []

    def __call__(self, spec: StageSpec) -> BodyResult:
        with self._lock:
            self.calls.append(spec)
            item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def call_count(self) -> int:
        return len(self.calls)


def failing(error: str, exit_code: int = 1) -> BodyResult:
    return BodyResult(exit_code=exit_code, error=error)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def store(tmp_dir: Path) -> StateStore:
    """Provide a fresh StateStore backed by a temp SQLite database."""
    return StateStore(tmp_dir / "test_state.db")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "pw-test-run-001"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Records every backoff the retry controller asks for."""
    return []


@pytest.fixture
def prod_config(tmp_dir: Path) -> ProdConfig:
    """Development config with every path inside the temp directory."""
    return ProdConfig(
        environment="development",
        ledger_path=tmp_dir / "ledger.db",
        state_path=tmp_dir / "state.db",
        registry_path=tmp_dir / "registry.db",
        default_stage_timeout_seconds=10.0,
        authorized_approvers=["alice", "bob"],
    )


@pytest.fixture
def machine_for(ledger: RunLedger, clock: FakeClock) -> Callable[[Iterable[str]], StageMachine]:
    """Factory fixture: a StageMachine over the stage graph for *environments*."""

    def _factory(environments: Iterable[str] = ("dev",)) -> StageMachine:
        graph = StageGraph(build_stage_definitions(list(environments)))
        return StageMachine(ledger, graph, clock=clock)

    return _factory


@pytest.fixture
def make_run(run_id: str) -> Callable[..., PipelineRun]:
    """Factory fixture: a RUNNING PipelineRun with sensible defaults."""

    def _factory(**overrides: Any) -> PipelineRun:
        defaults: dict[str, Any] = {
            "run_id": run_id,
            "repository": "git@example.com:team/app.git",
            "branch": "feature/login",
            "commit_sha": "abc123",
            "environments": ["dev"],
            "status": RunStatus.RUNNING,
        }
        defaults.update(overrides)
        return PipelineRun(**defaults)

    return _factory


@pytest.fixture
def make_coordinator(
    prod_config: ProdConfig, clock: FakeClock, sleeps: list[float]
) -> Callable[..., PipelineCoordinator]:
    """Factory fixture: a coordinator on temp storage with dry-run bodies.

    *bodies* override the defaults key by key, so ``{"deploy:staging": ...}``
    replaces only the staging deploy.
    """

    def _factory(
        pipeline: PipelineConfig | None = None,
        bodies: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> PipelineCoordinator:
        table: dict[str, Any] = {
            kind.value: DryRunStageBody() for kind in StageKind if kind != StageKind.VALIDATE
        }
        table.update(bodies or {})
        kwargs.setdefault("prod_config", prod_config)
        return PipelineCoordinator(
            pipeline,
            bodies=table,
            sleep=sleeps.append,
            clock=clock,
            **kwargs,
        )

    return _factory
