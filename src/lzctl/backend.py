"""Terraform state backend provisioning.

A storage account (created asynchronously, polled to a terminal state), blob
versioning, a private container, and the data-plane roles that let the
GitHub identity read and write state with Entra ID auth instead of keys.
"""

from __future__ import annotations

import logging

from .client import build_resource_id
from .config import StorageSettings
from .identity import IdentityProvisioner
from .models import (
    ResourceDescriptor,
    ResourceKind,
    RoleAssignmentPlan,
    Scope,
    StorageAccountAttributes,
    StorageContainerAttributes,
)
from .report import Action
from .steps import StepResult, StepRunner
from .waiter import JobStatus, PropagationWaiter

logger = logging.getLogger(__name__)

STORAGE_ROLES: tuple[str, ...] = ("Storage Blob Data Contributor", "Storage Account Contributor")


class BackendProvisioner:
    """Ensures the storage account, container and storage roles."""

    def __init__(
        self,
        runner: StepRunner,
        waiter: PropagationWaiter,
        identity: IdentityProvisioner,
    ) -> None:
        self._runner = runner
        self._waiter = waiter
        self._identity = identity
        self._config = runner.config

    @property
    def _settings(self) -> StorageSettings:
        if self._config.storage is None:
            raise ValueError("No storage settings configured")
        return self._config.storage

    def desired_account(self) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=self._settings.account_name,
            scope=Scope(self._config.subscription_id, self._config.resource_group),
            attributes=StorageAccountAttributes(
                location=self._config.location, versioning_enabled=True
            ),
        )

    def provision(self, principal_id: str | None, blocked_by: str | None = None) -> list[StepResult]:
        account = self.desired_account()
        container = ResourceDescriptor(
            kind=ResourceKind.STORAGE_CONTAINER,
            name=self._settings.container_name,
            scope=account.scope.child(account.name),
            attributes=StorageContainerAttributes(),
        )
        account_id = build_resource_id(account.kind, account.name, account.scope)
        role_plans = [RoleAssignmentPlan(role, account_id) for role in STORAGE_ROLES]

        results = [self._ensure_account(account, blocked_by)]
        account_blocker = results[-1].blocker()

        if account_blocker is None:
            results.append(self._ensure_versioning(account, results[0]))
        results.append(self._runner.ensure(container, account_blocker))
        results += self._identity.ensure_role_assignments(principal_id, role_plans, account_blocker)
        return results

    def _ensure_account(self, account: ResourceDescriptor, blocked_by: str | None) -> StepResult:
        runner = self._runner
        result = runner.ensure(account, blocked_by)
        if not result.ok or result.existed or runner.preview:
            return result

        timing = self._config.timing
        status = self._waiter.wait_for_terminal_status(
            lambda: self._provisioning_state(account),
            interval=timing.job_poll_interval_seconds,
            timeout=timing.job_timeout_seconds,
            description=f"storage account '{account.name}' provisioning",
        )
        if status == JobStatus.SUCCEEDED:
            probe = runner.prober.exists(account.kind, account.name, account.scope)
            return StepResult(result.step, probe.descriptor if probe.found else account)
        reason = (
            "provisioning job failed"
            if status == JobStatus.FAILED
            else f"provisioning did not finish within {timing.job_timeout_seconds:g}s"
        )
        return runner.fail(Action.PROBE, account, reason)

    def _provisioning_state(self, account: ResourceDescriptor) -> str | None:
        probe = self._runner.prober.exists(account.kind, account.name, account.scope)
        if not probe.found or probe.descriptor is None:
            return None
        attrs = probe.descriptor.attributes
        return attrs.provisioning_state if isinstance(attrs, StorageAccountAttributes) else None

    def _ensure_versioning(self, desired: ResourceDescriptor, account: StepResult) -> StepResult:
        live = account.descriptor
        if account.existed and live is not None:
            attrs = live.attributes
            if isinstance(attrs, StorageAccountAttributes) and attrs.versioning_enabled:
                return self._runner.skip(desired, live, "blob versioning already enabled")
        return self._runner.mutate(
            Action.PATCH,
            desired,
            lambda: self._runner.client.update(desired),
            detail="EnableVersioning",
        )
