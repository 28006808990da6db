"""Adversarial tests — one deployment per environment at a time.

Concurrent runs race for the same environment.  Deploy bodies must never
overlap, even between coordinators that only share a state database.  A
newer commit supersedes a queued older one, and a pointer write based on
a stale read is refused and fails the run cleanly.
"""

from __future__ import annotations

import threading
import time

import pytest

from pipewarden.core.stage_bodies import BodyResult, StageSpec
from pipewarden.core.state_store import ConcurrentModificationError
from pipewarden.models.runs import PipelineRun, RunStatus
from pipewarden.models.stages import StageStatus

REPO = "git@example.com:team/app.git"


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


class OverlapDetector:
    """Deploy body that records how many deploys run at once.

    The first call blocks until ``release`` is set.
    """

    def __init__(self) -> None:
        self.release = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.deployed: list[str] = []

    def __call__(self, spec: StageSpec) -> BodyResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            first = not self.deployed
            self.deployed.append(spec.commit_sha)
        if first:
            self.release.wait(timeout=5)
        with self._lock:
            self.active -= 1
        return BodyResult()


@pytest.fixture
def detector() -> OverlapDetector:
    return OverlapDetector()


@pytest.fixture
def coordinator(make_coordinator, detector):
    return make_coordinator(bodies={"deploy:dev": detector})


def start(coordinator, results: dict[str, PipelineRun], commit: str) -> threading.Thread:
    def target() -> None:
        results[commit] = coordinator.trigger(REPO, "feature/login", commit)

    thread = threading.Thread(target=target, name=f"run-{commit}")
    thread.start()
    return thread


# ---------------------------------------------------------------------------
# Test: Queueing
# ---------------------------------------------------------------------------


class TestSingleFlight:
    def test_deploys_never_overlap_and_newest_wins(self, coordinator, detector):
        results: dict[str, PipelineRun] = {}
        first = start(coordinator, results, "aaa111")
        wait_until(lambda: detector.deployed == ["aaa111"])

        second = start(coordinator, results, "bbb222")
        wait_until(lambda: len(coordinator.queue.waiting("dev")) == 1)

        third = start(coordinator, results, "ccc333")
        # bbb222 is superseded while it waits and never deploys
        second.join(timeout=5)
        assert not second.is_alive()

        detector.release.set()
        first.join(timeout=5)
        third.join(timeout=5)

        assert detector.max_active == 1
        assert detector.deployed == ["aaa111", "ccc333"]

        assert results["aaa111"].status == RunStatus.SUCCEEDED
        assert results["ccc333"].status == RunStatus.SUCCEEDED
        superseded = results["bbb222"]
        assert superseded.status == RunStatus.CANCELLED
        assert superseded.failure.classification == "cancelled"
        assert "superseded by run" in superseded.failure.message
        assert coordinator.environments.state("dev").current.tag == "ccc333"

    def test_coordinators_sharing_state_take_turns(self, make_coordinator, detector):
        # two coordinators on one state database stand in for two CLI processes
        first_process = make_coordinator(bodies={"deploy:dev": detector})
        second_process = make_coordinator(bodies={"deploy:dev": detector})
        results: dict[str, PipelineRun] = {}

        first = start(first_process, results, "aaa111")
        wait_until(lambda: detector.deployed == ["aaa111"])
        second = start(second_process, results, "bbb222")
        wait_until(lambda: len(second_process.queue.waiting("dev")) == 1)
        time.sleep(0.1)
        assert detector.deployed == ["aaa111"]

        detector.release.set()
        first.join(timeout=10)
        second.join(timeout=10)

        assert detector.max_active == 1
        assert detector.deployed == ["aaa111", "bbb222"]
        assert results["aaa111"].status == RunStatus.SUCCEEDED
        assert results["bbb222"].status == RunStatus.SUCCEEDED
        assert first_process.environments.state("dev").current.tag == "bbb222"
        assert first_process.store.lease_holder("dev", now=time.time()) is None

    def test_operator_cancel_of_queued_run(self, coordinator, detector):
        results: dict[str, PipelineRun] = {}
        first = start(coordinator, results, "aaa111")
        wait_until(lambda: detector.deployed == ["aaa111"])

        second = start(coordinator, results, "bbb222")
        wait_until(lambda: len(coordinator.queue.waiting("dev")) == 1)
        queued_run = coordinator.queue.waiting("dev")[0].run_id

        coordinator.cancel(queued_run)
        second.join(timeout=5)
        detector.release.set()
        first.join(timeout=5)

        assert results["bbb222"].status == RunStatus.CANCELLED
        assert results["aaa111"].status == RunStatus.SUCCEEDED
        assert detector.deployed == ["aaa111"]
        assert coordinator.environments.state("dev").current.tag == "aaa111"


# ---------------------------------------------------------------------------
# Test: Pointer compare-and-swap
# ---------------------------------------------------------------------------


class TestPointerCas:
    def test_stale_writer_loses(self, make_coordinator, clock):
        coordinator = make_coordinator()
        coordinator.trigger(REPO, "feature/login", "aaa111")
        environments = coordinator.environments
        stale_version = environments.state("dev").version

        coordinator.trigger(REPO, "feature/login", "bbb222")
        with pytest.raises(ConcurrentModificationError):
            environments.commit_verified(
                "dev",
                tag="aaa111",
                digest=coordinator.artifacts.get("aaa111").digest,
                run_id="pw-stale",
                deployed_at=clock(),
                expected_version=stale_version,
            )
        assert environments.state("dev").current.tag == "bbb222"

    def test_lost_pointer_race_fails_the_run(self, make_coordinator, monkeypatch):
        coordinator = make_coordinator()

        def lost_race(*args, **kwargs):
            raise ConcurrentModificationError(
                "Environment 'dev' changed concurrently (expected version 0)."
            )

        monkeypatch.setattr(coordinator.environments, "commit_verified", lost_race)
        run = coordinator.trigger(REPO, "feature/login", "aaa111")

        assert run.status == RunStatus.FAILED
        assert run.failure.classification == "terminal_infrastructure_error"
        assert run.stages["verify:dev"].status == StageStatus.FAILED
        assert coordinator.status(run.run_id).status == RunStatus.FAILED
        assert coordinator.store.lease_holder("dev", now=time.time()) is None
