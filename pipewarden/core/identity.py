"""Short-lived credential exchange.

Deploy stages receive a credential scoped to one run and one environment,
obtained from an external ``CredentialBroker`` (an OIDC token exchange in
real installations).  The engine checks the credential's lifetime, hands it
to the stage body, and never writes it anywhere: ``ScopedCredential`` keeps
the token in a ``SecretStr`` and the stage spec excludes it from dumps.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, SecretStr

from pipewarden.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialScope(BaseModel):
    """What a credential is for."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    environment: str
    audience: str = "pipewarden"
    permissions: list[str] = ["deploy"]


class ScopedCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: SecretStr
    scope: CredentialScope
    issued_at: datetime
    expires_at: datetime

    @property
    def ttl_seconds(self) -> float:
        return (self.expires_at - self.issued_at).total_seconds()


@runtime_checkable
class CredentialBroker(Protocol):
    """Exchanges a workload identity for a short-lived scoped credential."""

    def issue(self, scope: CredentialScope) -> ScopedCredential:
        ...


class LocalCredentialBroker:
    """Issues random opaque tokens; for development and tests."""

    def __init__(
        self,
        ttl_seconds: float = 900.0,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, scope: CredentialScope) -> ScopedCredential:
        now = self._clock()
        return ScopedCredential(
            token=SecretStr(uuid.uuid4().hex),
            scope=scope,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )


def obtain_credential(
    broker: CredentialBroker,
    scope: CredentialScope,
    *,
    max_ttl_seconds: float,
    clock: Callable[[], datetime] = _utc_now,
) -> ScopedCredential:
    """Request a credential for *scope* and check it is short-lived.

    Raises
    ------
    AuthenticationError
        The broker failed, or returned a credential that is already expired,
        scoped elsewhere, or valid for longer than *max_ttl_seconds*.
    """
    try:
        credential = broker.issue(scope)
    except AuthenticationError:
        raise
    except Exception as exc:
        raise AuthenticationError(
            f"Credential exchange failed for {scope.environment}: {exc}"
        ) from exc

    if credential.scope != scope:
        raise AuthenticationError(
            f"Broker returned a credential for {credential.scope.environment!r}, "
            f"expected {scope.environment!r}"
        )
    if credential.ttl_seconds > max_ttl_seconds:
        raise AuthenticationError(
            f"Credential lifetime {credential.ttl_seconds:.0f}s exceeds "
            f"the {max_ttl_seconds:.0f}s maximum"
        )
    if credential.expires_at <= clock():
        raise AuthenticationError("Broker returned an already expired credential")

    logger.debug(
        "Issued credential for run %s env %s (ttl %.0fs)",
        scope.run_id,
        scope.environment,
        credential.ttl_seconds,
    )
    return credential
