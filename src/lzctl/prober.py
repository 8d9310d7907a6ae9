"""Existence probing.

Every create and delete is preceded by a probe so that re-running against a
partially provisioned environment converges instead of failing on conflicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .client import CloudControlPlaneClient, ControlPlaneError
from .models import ResourceDescriptor, ResourceKind, Scope

logger = logging.getLogger(__name__)


class ProbeStatus(str, Enum):
    FOUND = "Found"
    NOT_FOUND = "NotFound"
    ERROR = "Error"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one existence probe.

    Attributes:
        status: Found, NotFound or Error.
        descriptor: The live resource when found.
        reason: Failure detail when the probe itself errored.
    """

    status: ProbeStatus
    descriptor: ResourceDescriptor | None = None
    reason: str | None = None

    @property
    def found(self) -> bool:
        return self.status == ProbeStatus.FOUND

    @property
    def not_found(self) -> bool:
        return self.status == ProbeStatus.NOT_FOUND

    @property
    def errored(self) -> bool:
        return self.status == ProbeStatus.ERROR


class ExistenceProber:
    """Answers "does this resource exist?" without raising on absence."""

    def __init__(self, client: CloudControlPlaneClient) -> None:
        self._client = client

    def exists(self, kind: ResourceKind, name: str, scope: Scope) -> ProbeResult:
        try:
            descriptor = self._client.get(kind, name, scope)
        except ControlPlaneError as e:
            logger.warning(
                f"Could not probe {kind.value} '{name}': {e}",
                extra={"kind": kind.value, "resource": name, "scope": str(scope)},
            )
            return ProbeResult(ProbeStatus.ERROR, reason=str(e))

        if descriptor is None:
            logger.debug(f"{kind.value} '{name}' not found", extra={"scope": str(scope)})
            return ProbeResult(ProbeStatus.NOT_FOUND)
        return ProbeResult(ProbeStatus.FOUND, descriptor=descriptor)

    def is_absent(self, kind: ResourceKind, name: str, scope: Scope) -> bool:
        """True only when the resource is positively known to be gone."""
        return self.exists(kind, name, scope).not_found
