"""Dependency-aware subnet teardown.

For each target subnet:

1. Discover dependents (NICs, private endpoints, container environments).
2. Refuse if a NIC is attached to a virtual machine. Never force-detach.
3. Delete dependents one at a time, container apps before their
   environment. The first failure aborts the rest and keeps the subnet.
4. Wait until every deleted dependent probes NotFound.
5. Delete the subnet, then its NSG unless other subnets still use it.

A failure on one subnet does not stop the other targets.
"""

from __future__ import annotations

import logging

from .client import CloudControlPlaneClient, ControlPlaneError, build_resource_id
from .config import RunConfig, TeardownSettings
from .dependencies import DependencyResolver
from .gate import ConfirmationGate
from .models import (
    ContainerAppAttributes,
    DependencyEdge,
    DependencyKind,
    NicAttributes,
    NsgAttributes,
    ResourceDescriptor,
    ResourceKind,
    Scope,
    SubnetAttributes,
    resource_name_from_id,
)
from .prober import ExistenceProber
from .report import Action, ExecutionReport, ExecutionReporter, Outcome
from .steps import StepResult, StepRunner
from .topology import nsg_name, subnet_base_name
from .waiter import PropagationWaiter, WaitOutcome

logger = logging.getLogger(__name__)


class PartialTeardownFailure(Exception):
    """Dependents of a target could not all be removed; the target was kept.

    Attributes:
        target: The resource that was not deleted.
        deleted: Dependents that were deleted before the failure.
    """

    def __init__(
        self,
        target: ResourceDescriptor,
        reason: str,
        deleted: list[ResourceDescriptor] | None = None,
    ) -> None:
        super().__init__(f"{target.label} not deleted: {reason}")
        self.target = target
        self.reason = reason
        self.deleted = deleted or []


class CascadingDeletionExecutor:
    """Deletes a subnet after its discovered dependents."""

    def __init__(
        self,
        runner: StepRunner,
        waiter: PropagationWaiter,
        resolver: DependencyResolver,
    ) -> None:
        self._runner = runner
        self._waiter = waiter
        self._resolver = resolver
        self._client = runner.client

    def delete_subnet(self, subnet: ResourceDescriptor) -> StepResult:
        try:
            edges = self._resolver.dependents_of(subnet)
            deleted = self.delete_dependents(subnet, edges)
            self._await_absence(subnet, deleted)
        except ControlPlaneError as e:
            return self._runner.fail(Action.DELETE, subnet, f"dependency discovery failed: {e}")
        except PartialTeardownFailure as e:
            self._runner.reporter.remediate(
                f"Clear the remaining dependents of {subnet.label} manually, then re-run teardown"
            )
            return self._runner.fail(Action.DELETE, subnet, e.reason)

        return self._runner.mutate(
            Action.DELETE,
            subnet,
            lambda: self._client.delete(subnet.kind, subnet.name, subnet.scope),
        )

    def delete_dependents(
        self, subnet: ResourceDescriptor, edges: list[DependencyEdge]
    ) -> list[ResourceDescriptor]:
        """Delete every dependent in order; fail fast.

        Raises:
            PartialTeardownFailure: On the first dependent that cannot be removed.
        """
        for edge in edges:
            if edge.kind != DependencyKind.ATTACHED_NIC:
                continue
            attrs = edge.source.attributes
            if isinstance(attrs, NicAttributes) and attrs.virtual_machine_id:
                vm = resource_name_from_id(attrs.virtual_machine_id, "virtualMachines")
                reason = (
                    f"NIC '{edge.source.name}' is attached to virtual machine '{vm}'; "
                    f"delete or move the VM first"
                )
                self._runner.fail(Action.DELETE, edge.source, reason)
                raise PartialTeardownFailure(subnet, reason)

        deleted: list[ResourceDescriptor] = []
        for edge in edges:
            if edge.kind == DependencyKind.DELEGATED_ENVIRONMENT:
                for app in self._container_apps(edge.source):
                    self._delete_one(subnet, app, deleted)
            self._delete_one(subnet, edge.source, deleted)
        return deleted

    def _delete_one(
        self,
        subnet: ResourceDescriptor,
        resource: ResourceDescriptor,
        deleted: list[ResourceDescriptor],
    ) -> None:
        result = self._runner.mutate(
            Action.DELETE,
            resource,
            lambda: self._client.delete(resource.kind, resource.name, resource.scope),
            detail=f"dependent of {subnet.label}",
        )
        if not result.ok:
            raise PartialTeardownFailure(
                subnet, f"could not delete dependent {resource.label}", deleted
            )
        deleted.append(resource)

    def _container_apps(self, environment: ResourceDescriptor) -> list[ResourceDescriptor]:
        environment_id = (
            environment.id
            or build_resource_id(environment.kind, environment.name, environment.scope)
        ).lower()
        apps = self._client.list(
            ResourceKind.CONTAINER_APP,
            Scope(environment.scope.subscription_id),
        )
        return [
            app
            for app in apps
            if isinstance(app.attributes, ContainerAppAttributes)
            and (app.attributes.environment_id or "").lower() == environment_id
        ]

    def _await_absence(
        self, subnet: ResourceDescriptor, deleted: list[ResourceDescriptor]
    ) -> None:
        if not deleted or self._runner.preview:
            return
        prober = self._runner.prober
        timing = self._runner.config.timing
        outcome = self._waiter.wait_until(
            lambda: all(prober.is_absent(d.kind, d.name, d.scope) for d in deleted),
            interval=timing.poll_interval_seconds,
            timeout=timing.propagation_timeout_seconds,
            description=f"dependents of {subnet.label} to disappear",
        )
        if outcome == WaitOutcome.TIMED_OUT:
            raise PartialTeardownFailure(
                subnet,
                f"dependents still present after {timing.propagation_timeout_seconds:g}s",
                deleted,
            )


class NsgGuard:
    """Deletes an NSG only when no subnet still references it."""

    def __init__(self, runner: StepRunner) -> None:
        self._runner = runner

    def delete_if_unassociated(
        self,
        nsg: ResourceDescriptor,
        scheduled_subnet_ids: set[str] | None = None,
    ) -> StepResult:
        runner = self._runner
        probe = runner.prober.exists(nsg.kind, nsg.name, nsg.scope)
        if probe.errored:
            return runner.fail(Action.PROBE, nsg, probe.reason or "probe failed")
        if not probe.found or probe.descriptor is None:
            step = runner.reporter.record(Action.PROBE, nsg, Outcome.SKIPPED, "already absent")
            return StepResult(step)

        live = probe.descriptor
        attrs = live.attributes
        associations = attrs.subnet_ids if isinstance(attrs, NsgAttributes) else []
        if runner.preview:
            # Subnets scheduled for deletion in this run will have released it
            scheduled = {s.lower() for s in scheduled_subnet_ids or set()}
            associations = [s for s in associations if s.lower() not in scheduled]

        if associations:
            runner.reporter.warn(
                f"NSG '{nsg.name}' is still associated with {len(associations)} subnet(s); "
                f"not deleting it"
            )
            step = runner.reporter.record(
                Action.DELETE, nsg, Outcome.SKIPPED, f"still associated: {', '.join(associations)}"
            )
            return StepResult(step, live, existed=True)

        return runner.mutate(
            Action.DELETE, live, lambda: runner.client.delete(nsg.kind, nsg.name, nsg.scope)
        )


class TeardownOrchestrator:
    """Tears down the configured subnets and their NSGs."""

    def __init__(
        self,
        config: RunConfig,
        client: CloudControlPlaneClient,
        reporter: ExecutionReporter | None = None,
        waiter: PropagationWaiter | None = None,
        gate: ConfirmationGate | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.reporter = reporter or ExecutionReporter(
            ExecutionReport(operation="teardown", preview=config.preview_only)
        )
        self.waiter = waiter or PropagationWaiter()
        self.gate = gate or ConfirmationGate(config)
        self.prober = ExistenceProber(client)
        self.runner = StepRunner(config, client, self.prober, self.reporter)
        self.executor = CascadingDeletionExecutor(
            self.runner, self.waiter, DependencyResolver(client, self.reporter)
        )
        self.nsg_guard = NsgGuard(self.runner)

    @property
    def report(self) -> ExecutionReport:
        return self.reporter.report

    @property
    def _settings(self) -> TeardownSettings:
        if self.config.teardown is None:
            raise ValueError("No teardown settings configured")
        return self.config.teardown

    def run(self) -> ExecutionReport:
        """Run the teardown.

        Raises:
            UserAbort: When the operator does not confirm.
        """
        settings = self._settings
        vnet_scope = Scope(self.config.subscription_id, self.config.resource_group).child(
            settings.vnet_name
        )
        logger.info(
            f"Tearing down {len(settings.subnet_names)} subnet(s) in VNet '{settings.vnet_name}'"
            + (" (preview)" if self.config.preview_only else "")
        )

        live: dict[str, ResourceDescriptor | None] = {}
        for name in settings.subnet_names:
            target = ResourceDescriptor(kind=ResourceKind.SUBNET, name=name, scope=vnet_scope)
            probe = self.prober.exists(target.kind, name, vnet_scope)
            if probe.errored:
                self.runner.fail(Action.PROBE, target, probe.reason or "probe failed")
                continue
            if probe.not_found:
                self.reporter.record(Action.PROBE, target, Outcome.SKIPPED, "already absent")
            live[name] = probe.descriptor

        present = [d for d in live.values() if d is not None]
        if present:
            self.gate.confirm_teardown([d.label for d in present])

        scheduled = {
            (d.id or build_resource_id(d.kind, d.name, d.scope)).lower() for d in present
        }
        for name, subnet in live.items():
            subnet_result = self.executor.delete_subnet(subnet) if subnet is not None else None
            if settings.delete_nsgs:
                self._teardown_nsg(name, subnet, subnet_result, scheduled)
        return self.report

    def _teardown_nsg(
        self,
        subnet_name: str,
        subnet: ResourceDescriptor | None,
        subnet_result: StepResult | None,
        scheduled: set[str],
    ) -> None:
        prefix = self.config.resource_group_prefix
        nsg = ResourceDescriptor(
            kind=ResourceKind.NSG,
            name=nsg_name(prefix, subnet_base_name(prefix, subnet_name)),
            scope=Scope(self.config.subscription_id, self.config.resource_group),
        )

        attrs = subnet.attributes if subnet is not None else None
        if isinstance(attrs, SubnetAttributes) and attrs.nsg_id:
            live_name = resource_name_from_id(attrs.nsg_id, "networkSecurityGroups")
            if live_name and live_name.lower() != nsg.name.lower():
                self.reporter.warn(
                    f"Subnet '{subnet_name}' is associated with NSG '{live_name}', "
                    f"but the naming convention gives '{nsg.name}'; acting on '{nsg.name}'"
                )

        if subnet_result is not None and not subnet_result.ok:
            self.runner.block(Action.DELETE, nsg, subnet_result.blocker() or "subnet not deleted")
            return
        self.nsg_guard.delete_if_unassociated(nsg, scheduled)
