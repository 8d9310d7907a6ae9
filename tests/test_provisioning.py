"""End-to-end provisioning tests against the fake control plane."""

from unittest import mock

import pytest

from fake_cloud import FakeClock, FakeControlPlane
from fake_cloud.landing_zone import (
    RESOURCE_GROUP,
    VNET_NAME,
    identity_settings,
    make_config,
    network_settings,
)
from lzctl.client import build_resource_id
from lzctl.config import RunConfig
from lzctl.models import ResourceKind, Scope, SubnetAttributes
from lzctl.provisioning import ProvisioningOrchestrator
from lzctl.report import Action, ExecutionReport, Outcome
from lzctl.source_control import GitHubEnvironmentClient
from lzctl.topology import APP_SERVICE_DELEGATION, TopologyError
from lzctl.waiter import PropagationWaiter

APP_SUBNET = "myapp-dev-app-subnet"
APP_NSG = "myapp-dev-app-nsg"
WEB_NSG = "myapp-dev-web-nsg"
WEB_SUBNET = "myapp-dev-web-subnet"


def provision(
    cloud: FakeControlPlane,
    config: RunConfig,
    clock: FakeClock | None = None,
    github: GitHubEnvironmentClient | None = None,
) -> ExecutionReport:
    orchestrator = ProvisioningOrchestrator(
        config,
        cloud,
        waiter=PropagationWaiter(clock or FakeClock()),
        github=github,
    )
    return orchestrator.run()


def full_config(**overrides) -> RunConfig:
    values = {"network": network_settings(), "identity": identity_settings()}
    values.update(overrides)
    return make_config(**values)


def outcomes_for(report: ExecutionReport, kind: ResourceKind) -> list[Outcome]:
    return [s.outcome for s in report.steps if s.target.kind == kind and s.action != Action.PROBE]


class TestFreshProvisioning:
    """Tests for provisioning into an empty resource group."""

    def test_creates_everything_in_order(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config())

        assert report.success
        created = [c.kind for c in cloud.calls_for("create")]
        assert created == [
            ResourceKind.VNET,
            *[ResourceKind.NSG] * 4,
            *[ResourceKind.SUBNET] * 4,
            ResourceKind.IDENTITY,
            ResourceKind.FEDERATED_CREDENTIAL,
            ResourceKind.ROLE_ASSIGNMENT,
        ]

    def test_subnets_carry_nsg_and_delegation(self, cloud: FakeControlPlane) -> None:
        provision(cloud, full_config())

        vnet_scope = cloud.rg_scope(RESOURCE_GROUP).child(VNET_NAME)
        subnet = cloud.lookup(ResourceKind.SUBNET, APP_SUBNET, vnet_scope)
        assert subnet is not None
        attrs = subnet.attributes
        assert isinstance(attrs, SubnetAttributes)
        assert attrs.address_prefix == "10.0.0.0/25"
        assert attrs.delegations == [APP_SERVICE_DELEGATION]
        assert attrs.nsg_id == build_resource_id(
            ResourceKind.NSG, APP_NSG, cloud.rg_scope(RESOURCE_GROUP)
        )

    def test_existing_resource_group_is_probe_skipped(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config())

        first = report.steps[0]
        assert first.target.kind == ResourceKind.RESOURCE_GROUP
        assert (first.action, first.outcome) == (Action.PROBE, Outcome.SKIPPED)

    def test_creates_missing_resource_group(self) -> None:
        cloud = FakeControlPlane()

        report = provision(cloud, full_config())

        assert report.success
        assert cloud.calls_for("create")[0].kind == ResourceKind.RESOURCE_GROUP

    def test_identity_propagation_pause(self, cloud: FakeControlPlane) -> None:
        clock = FakeClock()

        provision(cloud, full_config(), clock=clock)

        assert clock.sleeps == [5]

    def test_verification_runs_after_changes(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config())

        verified = report.steps_with(outcome=Outcome.VERIFIED)
        kinds = {s.target.kind for s in verified}
        assert kinds == {ResourceKind.IDENTITY, ResourceKind.FEDERATED_CREDENTIAL}

    def test_outputs(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config())

        outputs = report.outputs
        assert outputs["subscription_id"] == cloud.subscription_id
        assert outputs["vnet_name"] == "myapp-dev-vwan-spoke"
        assert outputs["vnet_resource_group"] == RESOURCE_GROUP
        assert outputs["client_id"]
        assert outputs["tenant_id"]


class TestIdempotency:
    """Tests for re-running against a converged environment."""

    def test_second_run_makes_no_mutations(self, cloud: FakeControlPlane) -> None:
        provision(cloud, full_config())
        cloud.reset_calls()

        report = provision(cloud, full_config())

        assert report.success
        assert cloud.mutating_calls == []
        assert not report.steps_with(outcome=Outcome.CREATED)
        assert not report.steps_with(outcome=Outcome.PATCHED)

    def test_second_run_skips_every_resource(self, cloud: FakeControlPlane) -> None:
        provision(cloud, full_config())

        report = provision(cloud, full_config())

        for kind in (ResourceKind.VNET, ResourceKind.NSG, ResourceKind.SUBNET, ResourceKind.IDENTITY):
            skipped = [
                s for s in report.steps if s.target.kind == kind and s.outcome == Outcome.SKIPPED
            ]
            assert skipped, kind

    def test_second_run_does_not_pause(self, cloud: FakeControlPlane) -> None:
        provision(cloud, full_config())
        clock = FakeClock()

        provision(cloud, full_config(), clock=clock)

        assert clock.sleeps == []


class TestPreview:
    """Tests for preview (dry-run) mode."""

    def test_preview_makes_no_mutations(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config(preview_only=True))

        assert cloud.mutating_calls == []
        assert report.preview
        assert report.success

    def test_preview_plans_every_change(self, cloud: FakeControlPlane) -> None:
        report = provision(cloud, full_config(preview_only=True))

        planned = report.steps_with(outcome=Outcome.PLANNED)
        kinds = [s.target.kind for s in planned]
        assert kinds.count(ResourceKind.SUBNET) == 4
        assert kinds.count(ResourceKind.NSG) == 4
        assert ResourceKind.IDENTITY in kinds
        assert ResourceKind.FEDERATED_CREDENTIAL in kinds
        assert ResourceKind.ROLE_ASSIGNMENT in kinds

    def test_preview_does_not_verify_or_sleep(self, cloud: FakeControlPlane) -> None:
        clock = FakeClock()

        report = provision(cloud, full_config(preview_only=True), clock=clock)

        assert not report.steps_with(outcome=Outcome.VERIFIED)
        assert clock.sleeps == []

    def test_preview_after_convergence_plans_nothing(self, cloud: FakeControlPlane) -> None:
        provision(cloud, full_config())

        report = provision(cloud, full_config(preview_only=True))

        assert not report.steps_with(outcome=Outcome.PLANNED)


class TestExistingSubnetReconciliation:
    """Tests for subnets that exist but are not fully configured."""

    @pytest.fixture
    def seeded(self, cloud: FakeControlPlane) -> FakeControlPlane:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, "10.0.0.0/24")
        nsg = cloud.add_nsg(RESOURCE_GROUP, APP_NSG)
        cloud.add_subnet(RESOURCE_GROUP, VNET_NAME, APP_SUBNET, "10.0.0.0/25", nsg_id=nsg.id)
        return cloud

    def test_missing_delegation_is_patched(self, seeded: FakeControlPlane) -> None:
        config = make_config(network=network_settings(roles=("app",)))

        report = provision(seeded, config)

        patches = report.steps_with(action=Action.PATCH)
        assert len(patches) == 1
        assert patches[0].outcome == Outcome.PATCHED
        assert "AddDelegation(Microsoft.Web/serverFarms)" in patches[0].detail
        assert seeded.calls_for("create", ResourceKind.SUBNET) == []

        live = seeded.lookup(
            ResourceKind.SUBNET, APP_SUBNET, seeded.rg_scope(RESOURCE_GROUP).child(VNET_NAME)
        )
        assert live is not None
        assert live.attributes.delegations == [APP_SERVICE_DELEGATION]  # type: ignore[union-attr]
        assert live.attributes.address_prefix == "10.0.0.0/25"  # type: ignore[union-attr]

    def test_missing_nsg_association_is_patched(self, cloud: FakeControlPlane) -> None:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, "10.0.0.0/24")
        cloud.add_subnet(
            RESOURCE_GROUP, VNET_NAME, APP_SUBNET, "10.0.0.0/25", delegations=(APP_SERVICE_DELEGATION,)
        )
        config = make_config(network=network_settings(roles=("app",)))

        report = provision(cloud, config)

        patches = report.steps_with(action=Action.PATCH)
        assert [p.detail for p in patches] == [f"AssociateNsg({APP_NSG})"]
        nsg = cloud.lookup(ResourceKind.NSG, APP_NSG, cloud.rg_scope(RESOURCE_GROUP))
        assert nsg is not None
        assert len(nsg.attributes.subnet_ids) == 1  # type: ignore[union-attr]

    def test_patch_then_rerun_converges(self, seeded: FakeControlPlane) -> None:
        config = make_config(network=network_settings(roles=("app",)))
        provision(seeded, config)
        seeded.reset_calls()

        report = provision(seeded, config)

        assert seeded.mutating_calls == []
        assert not report.steps_with(action=Action.PATCH)

    def test_preview_plans_patch(self, seeded: FakeControlPlane) -> None:
        config = make_config(network=network_settings(roles=("app",)), preview_only=True)

        report = provision(seeded, config)

        patches = report.steps_with(action=Action.PATCH)
        assert [p.outcome for p in patches] == [Outcome.PLANNED]
        assert seeded.mutating_calls == []

    def test_foreign_delegation_is_left_alone(self, cloud: FakeControlPlane) -> None:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, "10.0.0.0/24")
        nsg = cloud.add_nsg(RESOURCE_GROUP, APP_NSG)
        cloud.add_subnet(
            RESOURCE_GROUP,
            VNET_NAME,
            APP_SUBNET,
            "10.0.0.0/25",
            nsg_id=nsg.id,
            delegations=("Microsoft.App/environments",),
        )
        config = make_config(network=network_settings(roles=("app",)))

        report = provision(cloud, config)

        assert cloud.calls_for("update") == []
        assert any("not adding Microsoft.Web/serverFarms" in w for w in report.warnings)

    def test_cidr_mismatch_warns(self, cloud: FakeControlPlane) -> None:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, "10.0.0.0/24")
        nsg = cloud.add_nsg(RESOURCE_GROUP, APP_NSG)
        cloud.add_subnet(
            RESOURCE_GROUP,
            VNET_NAME,
            APP_SUBNET,
            "10.0.0.0/26",
            nsg_id=nsg.id,
            delegations=(APP_SERVICE_DELEGATION,),
        )
        config = make_config(network=network_settings(roles=("app",)))

        report = provision(cloud, config)

        assert report.success
        assert cloud.mutating_calls == []
        assert any("has CIDR 10.0.0.0/26, expected 10.0.0.0/25" in w for w in report.warnings)

    def test_vnet_address_space_mismatch_warns(self, cloud: FakeControlPlane) -> None:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, "10.9.0.0/24")
        config = make_config(network=network_settings(roles=("web",)))

        report = provision(cloud, config)

        assert any("expected 10.0.0.0/24" in w for w in report.warnings)


class TestPolicyDenial:
    """Tests for Azure Policy denials."""

    def test_denied_nsg_is_tolerated_and_subnet_blocked(self, cloud: FakeControlPlane) -> None:
        cloud.deny_by_policy("create", ResourceKind.NSG, WEB_NSG)

        report = provision(cloud, make_config(network=network_settings()))

        by_target = {(s.target.kind, s.target.name): s for s in report.steps}
        assert by_target[(ResourceKind.NSG, WEB_NSG)].outcome == Outcome.TOLERATED
        web_subnet = by_target[(ResourceKind.SUBNET, WEB_SUBNET)]
        assert web_subnet.outcome == Outcome.BLOCKED
        assert WEB_NSG in web_subnet.detail
        assert report.remediation
        assert "Azure Policy" in report.remediation[0]

    def test_other_subnets_still_created(self, cloud: FakeControlPlane) -> None:
        cloud.deny_by_policy("create", ResourceKind.NSG, WEB_NSG)

        provision(cloud, make_config(network=network_settings()))

        created = {c.name for c in cloud.calls_for("create", ResourceKind.SUBNET)}
        assert WEB_SUBNET not in created
        assert APP_SUBNET in created

    def test_tolerated_run_still_succeeds(self, cloud: FakeControlPlane) -> None:
        cloud.deny_by_policy("create", ResourceKind.NSG, WEB_NSG)

        report = provision(cloud, make_config(network=network_settings()))

        assert report.success

    def test_denied_identity_blocks_chain(self, cloud: FakeControlPlane) -> None:
        cloud.deny_by_policy("create", ResourceKind.IDENTITY)

        report = provision(cloud, make_config(identity=identity_settings()))

        assert outcomes_for(report, ResourceKind.IDENTITY) == [Outcome.TOLERATED]
        assert outcomes_for(report, ResourceKind.FEDERATED_CREDENTIAL) == [Outcome.BLOCKED]
        assert outcomes_for(report, ResourceKind.ROLE_ASSIGNMENT) == [Outcome.BLOCKED]


class TestFailures:
    """Tests for failed steps and their dependents."""

    def test_missing_resource_group_without_create(self) -> None:
        cloud = FakeControlPlane()

        report = provision(cloud, full_config(create_resource_group=False))

        assert not report.success
        assert report.steps[0].outcome == Outcome.FAILED
        assert cloud.mutating_calls == []
        assert outcomes_for(report, ResourceKind.VNET) == [Outcome.BLOCKED]
        assert outcomes_for(report, ResourceKind.IDENTITY) == [Outcome.BLOCKED]

    def test_vnet_failure_blocks_subnets(self, cloud: FakeControlPlane) -> None:
        cloud.inject_error("create", ResourceKind.VNET)

        report = provision(cloud, make_config(network=network_settings()))

        assert not report.success
        assert outcomes_for(report, ResourceKind.SUBNET) == [Outcome.BLOCKED] * 4

    def test_probe_error_fails_step(self, cloud: FakeControlPlane) -> None:
        cloud.inject_error("get", ResourceKind.VNET)

        report = provision(cloud, make_config(network=network_settings()))

        vnet_steps = [s for s in report.steps if s.target.kind == ResourceKind.VNET]
        assert [(s.action, s.outcome) for s in vnet_steps] == [(Action.PROBE, Outcome.FAILED)]
        assert cloud.calls_for("create", ResourceKind.VNET) == []

    def test_failure_skips_verification(self, cloud: FakeControlPlane) -> None:
        cloud.inject_error("create", ResourceKind.FEDERATED_CREDENTIAL)

        report = provision(cloud, full_config())

        assert not report.success
        assert not report.steps_with(outcome=Outcome.VERIFIED)

    def test_unplannable_topology_fails(self, cloud: FakeControlPlane) -> None:
        config = make_config(network=network_settings())

        with mock.patch(
            "lzctl.provisioning.plan_topology", side_effect=TopologyError("no room")
        ):
            report = provision(cloud, config)

        assert not report.success
        assert "Cannot plan topology: no room" in report.steps[-1].detail


class TestGitHubSecrets:
    """Tests for publishing the identity to a GitHub environment."""

    @pytest.fixture
    def github(self) -> mock.Mock:
        client = mock.Mock(spec=GitHubEnvironmentClient)
        client.is_available.return_value = True
        client.can_access.return_value = True
        client.environment_exists.return_value = False
        return client

    def test_publishes_secrets(self, cloud: FakeControlPlane, github: mock.Mock) -> None:
        config = full_config(identity=identity_settings(create_github_secrets=True))

        report = provision(cloud, config, github=github)

        github.create_environment.assert_called_once_with("myorg/myapp", "dev")
        names = [c.args[2] for c in github.set_secret.call_args_list]
        assert names == [
            "AZURE_CLIENT_ID",
            "AZURE_SUBSCRIPTION_ID",
            "AZURE_TENANT_ID",
            "VNET_NAME",
            "VNET_RESOURCE_GROUP_NAME",
        ]
        assert all(r.success for r in report.source_control_results)

    def test_not_published_without_flag(self, cloud: FakeControlPlane, github: mock.Mock) -> None:
        provision(cloud, full_config(), github=github)

        github.is_available.assert_not_called()

    def test_not_published_in_preview(self, cloud: FakeControlPlane, github: mock.Mock) -> None:
        config = full_config(
            identity=identity_settings(create_github_secrets=True), preview_only=True
        )

        provision(cloud, config, github=github)

        github.set_secret.assert_not_called()

    def test_failure_does_not_fail_run(self, cloud: FakeControlPlane, github: mock.Mock) -> None:
        github.can_access.return_value = False
        config = full_config(identity=identity_settings(create_github_secrets=True))

        report = provision(cloud, config, github=github)

        assert report.success
        assert [r.success for r in report.source_control_results] == [False]


class TestScopes:
    """Tests for the scopes the orchestrator addresses."""

    def test_resource_group_scope(self, cloud: FakeControlPlane) -> None:
        orchestrator = ProvisioningOrchestrator(full_config(), cloud)

        assert orchestrator.resource_group_scope == Scope(cloud.subscription_id, RESOURCE_GROUP)
