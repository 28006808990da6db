"""Environment registry — definitions plus the versioned deploy pointer.

Each environment has one current verified artifact and a bounded history
of verified deployments.  All writes are compare-and-swap on the stored
version: callers pass the version they read, and a concurrent writer
makes the swap fail with ``ConcurrentModificationError`` instead of being
silently overwritten.  The coordinator additionally holds the
environment's deployment slot while writing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from pipewarden.core.state_store import StateStore
from pipewarden.models.environments import (
    DeploymentAction,
    DeploymentRecord,
    EnvironmentDefinition,
    EnvironmentState,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentRegistry:
    """Definitions and durable state for every deployment environment.

    Parameters
    ----------
    definitions:
        The configured environments, in promotion order.
    store:
        Durable state backing the pointers.
    history_limit:
        Most recent deployments kept per environment.
    """

    def __init__(
        self,
        definitions: Iterable[EnvironmentDefinition],
        store: StateStore,
        *,
        history_limit: int = 20,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._definitions = {d.name: d for d in definitions}
        self._store = store
        self._history_limit = history_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        return list(self._definitions)

    def definition(self, name: str) -> EnvironmentDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise KeyError(f"Unknown environment: {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state(self, name: str) -> EnvironmentState:
        self.definition(name)
        return self._store.load_environment(name)

    def commit_verified(
        self,
        name: str,
        *,
        tag: str,
        digest: str,
        run_id: str,
        deployed_at: datetime,
        expected_version: int,
        action: DeploymentAction = DeploymentAction.DEPLOY,
    ) -> EnvironmentState:
        """Point *name* at a newly verified artifact.

        Also clears a previous ``degraded`` flag: the environment is
        serving a verified artifact again.
        """
        current = self.state(name)
        record = DeploymentRecord(
            tag=tag,
            digest=digest,
            run_id=run_id,
            action=action,
            deployed_at=deployed_at,
            verified_at=self._clock(),
            replaced_tag=current.current.tag if current.current else None,
        )
        history = [*current.history, record][-self._history_limit :]
        updated = current.model_copy(
            update={
                "current": record,
                "history": history,
                "degraded": False,
                "degraded_reason": None,
            }
        )
        stored = self._store.compare_and_swap_environment(updated, expected_version)
        logger.info(
            "%s now at %s (%s, version %d)", name, tag, action.value, stored.version
        )
        return stored

    def record_rollback(
        self,
        name: str,
        *,
        target_tag: str,
        target_digest: str,
        failed_tag: str,
        run_id: str,
        deployed_at: datetime,
        expected_version: int,
    ) -> EnvironmentState:
        """Point *name* at a restored artifact after a verified rollback.

        History gains a ``rollback`` entry whose ``replaced_tag`` names the
        artifact that was rolled back.
        """
        current = self.state(name)
        record = DeploymentRecord(
            tag=target_tag,
            digest=target_digest,
            run_id=run_id,
            action=DeploymentAction.ROLLBACK,
            deployed_at=deployed_at,
            verified_at=self._clock(),
            replaced_tag=failed_tag,
        )
        updated = current.model_copy(
            update={
                "current": record,
                "history": [*current.history, record][-self._history_limit :],
                "degraded": False,
                "degraded_reason": None,
            }
        )
        return self._store.compare_and_swap_environment(updated, expected_version)

    def mark_degraded(self, name: str, reason: str, *, expected_version: int) -> EnvironmentState:
        current = self.state(name)
        updated = current.model_copy(update={"degraded": True, "degraded_reason": reason})
        logger.error("Environment %s marked degraded: %s", name, reason)
        return self._store.compare_and_swap_environment(updated, expected_version)

    def previous_verified(self, name: str) -> DeploymentRecord | None:
        """The last verified deployment before the current one, if any."""
        state = self.state(name)
        if state.current is None:
            return None
        for record in reversed(state.history[:-1]):
            if (record.tag, record.digest) != (state.current.tag, state.current.digest):
                return record
        return None

    def deployed_tags(self) -> frozenset[str]:
        """Tags currently deployed in any environment."""
        tags = set()
        for name in self._definitions:
            current = self._store.load_environment(name).current
            if current is not None:
                tags.add(current.tag)
        return frozenset(tags)
