"""Probe-then-mutate step execution shared by the orchestrators.

A step probes before it mutates, records exactly one OperationStep per
resource, turns policy denials into Tolerated outcomes with a remediation
note, and in preview mode records Planned instead of calling the client.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .client import CloudControlPlaneClient, ControlPlaneError, PolicyRestrictionError
from .config import RunConfig
from .models import ResourceDescriptor
from .prober import ExistenceProber
from .report import Action, ExecutionReporter, OperationStep, Outcome

logger = logging.getLogger(__name__)

_DONE_OUTCOMES: dict[Action, Outcome] = {
    Action.CREATE: Outcome.CREATED,
    Action.PATCH: Outcome.PATCHED,
    Action.DELETE: Outcome.DELETED,
}


@dataclass(frozen=True)
class StepResult:
    """The recorded step and the resource it left behind (if any)."""

    step: OperationStep
    descriptor: ResourceDescriptor | None = None
    existed: bool = False

    @property
    def ok(self) -> bool:
        return self.step.completed

    def blocker(self) -> str | None:
        """Reason to block dependents, or None when they may proceed."""
        if self.ok:
            return None
        return f"{self.step.target.label} is {self.step.outcome.value.lower()}"


class StepRunner:
    """Runs probe / create / patch / delete steps and records them."""

    def __init__(
        self,
        config: RunConfig,
        client: CloudControlPlaneClient,
        prober: ExistenceProber,
        reporter: ExecutionReporter,
    ) -> None:
        self.config = config
        self.client = client
        self.prober = prober
        self.reporter = reporter

    @property
    def preview(self) -> bool:
        return self.config.preview_only

    def block(self, action: Action, target: ResourceDescriptor, reason: str) -> StepResult:
        return StepResult(self.reporter.record(action, target, Outcome.BLOCKED, reason))

    def fail(self, action: Action, target: ResourceDescriptor, reason: str) -> StepResult:
        return StepResult(self.reporter.record(action, target, Outcome.FAILED, reason))

    def skip(self, target: ResourceDescriptor, existing: ResourceDescriptor, detail: str) -> StepResult:
        step = self.reporter.record(Action.PROBE, target, Outcome.SKIPPED, detail)
        return StepResult(step, existing, existed=True)

    def ensure(
        self,
        desired: ResourceDescriptor,
        blocked_by: str | None = None,
    ) -> StepResult:
        """Create ``desired`` unless a probe finds it already exists."""
        if blocked_by:
            return self.block(Action.CREATE, desired, blocked_by)

        probe = self.prober.exists(desired.kind, desired.name, desired.scope)
        if probe.errored:
            return self.fail(Action.PROBE, desired, probe.reason or "probe failed")
        if probe.found:
            return self.skip(desired, probe.descriptor, "already exists")
        return self.mutate(Action.CREATE, desired, lambda: self.client.create(desired))

    def mutate(
        self,
        action: Action,
        target: ResourceDescriptor,
        call: Callable[[], ResourceDescriptor | None],
        detail: str = "",
        exists_codes: frozenset[str] = frozenset(),
    ) -> StepResult:
        """Run one mutating call, or record Planned in preview.

        Error codes in ``exists_codes`` mean a concurrent or earlier writer
        got there first; they are recorded as Skipped.
        """
        if self.preview:
            step = self.reporter.record(action, target, Outcome.PLANNED, detail)
            return StepResult(step, target)

        try:
            result = call()
        except ControlPlaneError as e:
            if e.code not in exists_codes:
                return self._record_error(action, target, e)
            step = self.reporter.record(action, target, Outcome.SKIPPED, "already exists")
            return StepResult(step, target, existed=True)

        step = self.reporter.record(action, target, _DONE_OUTCOMES[action], detail)
        return StepResult(step, result if result is not None else target)

    def _record_error(
        self, action: Action, target: ResourceDescriptor, error: ControlPlaneError
    ) -> StepResult:
        if not isinstance(error, PolicyRestrictionError):
            return self.fail(action, target, str(error))
        step = self.reporter.record(action, target, Outcome.TOLERATED, str(error))
        self.reporter.remediate(
            f"{action.value} {target.label} was denied by Azure Policy. "
            f"Request a policy exemption or perform the change manually, then re-run."
        )
        return StepResult(step)
