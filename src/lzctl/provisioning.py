"""Landing zone provisioning.

Strict order, each step probed first so re-runs converge:

    ResourceGroup -> VNet -> NSG per subnet -> Subnet (NSG + delegation)
        -> Identity -> Federated credentials -> Role assignments
        -> Storage account -> Versioning -> Container -> Storage roles
        -> Verification

Existing subnets that lack their delegation or NSG association get a single
Patch step; they are never recreated. A policy denial is Tolerated and the
steps that depend on it are Blocked.
"""

from __future__ import annotations

import logging

from .backend import BackendProvisioner
from .client import CloudControlPlaneClient, ControlPlaneError, build_resource_id
from .config import RunConfig
from .identity import IdentityProvisioner, IdentityResult, federated_credential_plans
from .models import (
    FederatedCredentialAttributes,
    ResourceDescriptor,
    ResourceGroupAttributes,
    ResourceKind,
    Scope,
    SubnetAttributes,
    VNetAttributes,
)
from .prober import ExistenceProber
from .report import Action, ExecutionReport, ExecutionReporter, Outcome
from .source_control import GitHubEnvironmentClient, publish_github_secrets, spoke_vnet_name
from .steps import StepResult, StepRunner
from .topology import NetworkTopology, SubnetPlan, TopologyError, plan_topology
from .waiter import PropagationWaiter

logger = logging.getLogger(__name__)


class ProvisioningOrchestrator:
    """Builds and runs the ordered provisioning step list for one RunConfig."""

    def __init__(
        self,
        config: RunConfig,
        client: CloudControlPlaneClient,
        reporter: ExecutionReporter | None = None,
        waiter: PropagationWaiter | None = None,
        github: GitHubEnvironmentClient | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.reporter = reporter or ExecutionReporter(
            ExecutionReport(operation="provision", preview=config.preview_only)
        )
        self.waiter = waiter or PropagationWaiter()
        self.prober = ExistenceProber(client)
        self.runner = StepRunner(config, client, self.prober, self.reporter)
        self.identity = IdentityProvisioner(self.runner, self.waiter)
        self.backend = BackendProvisioner(self.runner, self.waiter, self.identity)
        self.github = github

    @property
    def report(self) -> ExecutionReport:
        return self.reporter.report

    @property
    def resource_group_scope(self) -> Scope:
        return Scope(self.config.subscription_id, self.config.resource_group)

    def run(self) -> ExecutionReport:
        config = self.config
        logger.info(
            f"Provisioning landing zone in resource group '{config.resource_group}'"
            + (" (preview)" if config.preview_only else ""),
            extra={"subscription_id": config.subscription_id, "location": config.location},
        )

        rg_blocker = self.ensure_resource_group().blocker()

        if config.network is not None:
            self.provision_network(rg_blocker)

        identity_result: IdentityResult | None = None
        if config.identity is not None:
            identity_result = self.identity.provision(rg_blocker)
            self._record_identity_outputs(identity_result)

        if config.storage is not None and identity_result is not None:
            blocker = rg_blocker or self._first_blocker(identity_result.steps[:1])
            self.backend.provision(identity_result.principal_id, blocker)
            self.reporter.output("storage_account", config.storage.account_name)
            self.reporter.output("storage_container", config.storage.container_name)
            self.reporter.output("storage_resource_group", config.resource_group)

        if not config.preview_only:
            self.verify()
            if identity_result is not None:
                self._publish_secrets(identity_result)
        return self.report

    # -------------------------------------------------------------------------
    # Resource group and network
    # -------------------------------------------------------------------------

    def ensure_resource_group(self) -> StepResult:
        config = self.config
        desired = ResourceDescriptor(
            kind=ResourceKind.RESOURCE_GROUP,
            name=config.resource_group,
            scope=Scope(config.subscription_id),
            attributes=ResourceGroupAttributes(location=config.location),
        )
        if config.create_resource_group:
            return self.runner.ensure(desired)

        probe = self.prober.exists(desired.kind, desired.name, desired.scope)
        if probe.found and probe.descriptor is not None:
            return self.runner.skip(desired, probe.descriptor, "already exists")
        reason = probe.reason or "resource group does not exist and creation is disabled"
        return self.runner.fail(Action.PROBE, desired, reason)

    def provision_network(self, blocked_by: str | None = None) -> list[StepResult]:
        try:
            topology = plan_topology(self.config)
        except TopologyError as e:
            vnet = self._vnet_descriptor()
            return [self.runner.fail(Action.CREATE, vnet, f"Cannot plan topology: {e}")]

        for plan in topology.subnets:
            logger.info(
                f"Planned subnet {plan.name} {plan.cidr}",
                extra={"role": plan.role, "nsg": plan.nsg_name, "delegation": plan.delegation},
            )

        results: list[StepResult] = []
        vnet_result = self.runner.ensure(self._vnet_descriptor(), blocked_by)
        results.append(vnet_result)
        if vnet_result.existed:
            self._check_vnet_address_space(vnet_result.descriptor, topology)

        nsg_results: dict[str, StepResult] = {}
        for plan in topology.subnets:
            nsg = ResourceDescriptor(
                kind=ResourceKind.NSG,
                name=plan.nsg_name,
                scope=self.resource_group_scope,
                attributes=topology.nsg_attributes(plan, self.config.location),
            )
            nsg_results[plan.role] = self.runner.ensure(nsg, blocked_by)
            results.append(nsg_results[plan.role])

        for plan in topology.subnets:
            results.append(self.ensure_subnet(plan, vnet_result, nsg_results[plan.role]))

        return results

    def _vnet_descriptor(self) -> ResourceDescriptor:
        network = self.config.network
        assert network is not None
        return ResourceDescriptor(
            kind=ResourceKind.VNET,
            name=network.vnet_name,
            scope=self.resource_group_scope,
            attributes=VNetAttributes(
                location=self.config.location, address_prefixes=[network.address_space]
            ),
        )

    def _check_vnet_address_space(
        self, live: ResourceDescriptor | None, topology: NetworkTopology
    ) -> None:
        attrs = live.attributes if live else None
        if isinstance(attrs, VNetAttributes) and topology.address_space not in attrs.address_prefixes:
            self.reporter.warn(
                f"VNet '{topology.vnet_name}' has address space {attrs.address_prefixes}, "
                f"expected {topology.address_space}; leaving it untouched"
            )

    def ensure_subnet(
        self, plan: SubnetPlan, vnet: StepResult, nsg: StepResult
    ) -> StepResult:
        nsg_id = None
        if nsg.descriptor is not None:
            nsg_id = nsg.descriptor.id or build_resource_id(
                ResourceKind.NSG, plan.nsg_name, self.resource_group_scope
            )
        desired = ResourceDescriptor(
            kind=ResourceKind.SUBNET,
            name=plan.name,
            scope=self.resource_group_scope.child(vnet.step.target.name),
            attributes=SubnetAttributes(
                address_prefix=plan.cidr,
                nsg_id=nsg_id,
                delegations=[plan.delegation] if plan.delegation else [],
            ),
        )

        blocker = vnet.blocker() or nsg.blocker()
        if blocker:
            return self.runner.block(Action.CREATE, desired, blocker)

        probe = self.prober.exists(desired.kind, desired.name, desired.scope)
        if probe.errored:
            return self.runner.fail(Action.PROBE, desired, probe.reason or "probe failed")
        if not probe.found or probe.descriptor is None:
            return self.runner.mutate(
                Action.CREATE, desired, lambda: self.client.create(desired), detail=plan.cidr
            )
        return self._reconcile_existing_subnet(plan, desired, probe.descriptor)

    def _reconcile_existing_subnet(
        self, plan: SubnetPlan, desired: ResourceDescriptor, live: ResourceDescriptor
    ) -> StepResult:
        attrs = live.attributes
        assert isinstance(attrs, SubnetAttributes)
        wanted = desired.attributes
        assert isinstance(wanted, SubnetAttributes)

        if attrs.address_prefix and attrs.address_prefix != plan.cidr:
            self.reporter.warn(
                f"Subnet '{plan.name}' has CIDR {attrs.address_prefix}, expected {plan.cidr}; "
                f"leaving the address range untouched"
            )

        changes: list[str] = []
        patch: dict[str, object] = {
            "address_prefix": attrs.address_prefix,
            "delegations": [],
            "nsg_id": None,
        }

        if plan.delegation and not attrs.has_delegation(plan.delegation):
            if attrs.delegations:
                self.reporter.warn(
                    f"Subnet '{plan.name}' is delegated to {attrs.delegations}, "
                    f"not adding {plan.delegation}"
                )
            else:
                changes.append(f"AddDelegation({plan.delegation})")
                patch["delegations"] = [plan.delegation]

        if wanted.nsg_id:
            if attrs.nsg_id is None:
                changes.append(f"AssociateNsg({plan.nsg_name})")
                patch["nsg_id"] = wanted.nsg_id
            elif attrs.nsg_id.lower() != wanted.nsg_id.lower():
                self.reporter.warn(
                    f"Subnet '{plan.name}' is associated with {attrs.nsg_id}, "
                    f"expected {plan.nsg_name}; leaving the association untouched"
                )

        if not changes:
            return self.runner.skip(desired, live, "already configured")

        patched = desired.with_attributes(**patch)
        return self.runner.mutate(
            Action.PATCH,
            patched,
            lambda: self.client.update(patched),
            detail=", ".join(changes),
        )

    # -------------------------------------------------------------------------
    # Verification and outputs
    # -------------------------------------------------------------------------

    def verify(self) -> None:
        """Re-probe what this run was responsible for.

        Skipped when any step did not complete; those are already reported.
        """
        if not all(step.completed for step in self.report.steps):
            logger.warning("Skipping verification: not every step completed")
            return

        logger.info("Verifying setup...")
        config = self.config
        if config.identity is not None:
            chain = self.identity.build_chain()
            identity = self._verify_exists(chain.identity)
            if identity is not None:
                self._verify_federated_credentials(chain.identity)
                self._verify_role_assignments(identity)

        if config.storage is not None:
            account = self.backend.desired_account()
            if self._verify_exists(account) is not None:
                self._verify_exists(
                    ResourceDescriptor(
                        kind=ResourceKind.STORAGE_CONTAINER,
                        name=config.storage.container_name,
                        scope=account.scope.child(account.name),
                    )
                )

    def _verify_exists(self, target: ResourceDescriptor) -> ResourceDescriptor | None:
        probe = self.prober.exists(target.kind, target.name, target.scope)
        if probe.found:
            self.reporter.record(Action.PROBE, target, Outcome.VERIFIED)
            return probe.descriptor
        self.reporter.record(
            Action.PROBE, target, Outcome.FAILED, probe.reason or "missing after provisioning"
        )
        return None

    def _verify_federated_credentials(self, identity: ResourceDescriptor) -> None:
        assert self.config.identity is not None
        scope = identity.scope.child(identity.name)
        try:
            existing = self.client.list(ResourceKind.FEDERATED_CREDENTIAL, scope)
        except ControlPlaneError as e:
            self.reporter.warn(f"Could not verify federated credentials: {e}")
            return
        subjects = {
            c.attributes.subject
            for c in existing
            if isinstance(c.attributes, FederatedCredentialAttributes)
        }
        for plan in federated_credential_plans(self.config.identity):
            target = ResourceDescriptor(
                kind=ResourceKind.FEDERATED_CREDENTIAL, name=plan.name, scope=scope
            )
            if plan.subject in subjects:
                self.reporter.record(Action.PROBE, target, Outcome.VERIFIED, plan.subject)
            else:
                self.reporter.record(
                    Action.PROBE, target, Outcome.FAILED, f"no credential trusts {plan.subject}"
                )

    def _verify_role_assignments(self, identity: ResourceDescriptor) -> None:
        principal_id = getattr(identity.attributes, "principal_id", None)
        if not principal_id:
            return
        assert self.config.identity is not None
        role_scope = self.config.identity.role_scope or self.config.subscription_scope
        try:
            assignments = self.client.list_role_assignments(role_scope, principal_id)
        except ControlPlaneError as e:
            self.reporter.warn(f"Could not verify role assignments: {e}")
            return
        if not assignments:
            self.reporter.warn(f"No role assignments found for the identity at {role_scope}")
        else:
            logger.info(f"Identity has {len(assignments)} role assignment(s) at {role_scope}")

    def _record_identity_outputs(self, result: IdentityResult) -> None:
        config = self.config
        assert config.identity is not None
        self.reporter.output("subscription_id", config.subscription_id)
        if config.tenant_id:
            self.reporter.output("tenant_id", config.tenant_id)
        self.reporter.output("github_repo", config.identity.github_repo)
        self.reporter.output("environment", config.identity.environment)
        self.reporter.output("vnet_name", spoke_vnet_name(config.resource_group))
        self.reporter.output("vnet_resource_group", config.resource_group)
        if result.client_id:
            self.reporter.output("client_id", result.client_id)
        identity = result.identity
        tenant = getattr(identity.attributes, "tenant_id", None) if identity else None
        if tenant and not config.tenant_id:
            self.reporter.output("tenant_id", tenant)

    def _publish_secrets(self, result: IdentityResult) -> None:
        settings = self.config.identity
        if settings is None or not settings.create_github_secrets:
            return
        if not result.client_id:
            self.reporter.warn("Identity client id unknown; GitHub secrets were not set")
            return
        github = self.github or GitHubEnvironmentClient()
        for outcome in publish_github_secrets(github, self.config, self.report.outputs):
            self.reporter.source_control(outcome)

    @staticmethod
    def _first_blocker(results: list[StepResult]) -> str | None:
        for result in results:
            blocker = result.blocker()
            if blocker:
                return blocker
        return None
