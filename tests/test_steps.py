"""Tests for probe-then-mutate step execution."""

from fake_cloud import FakeControlPlane
from fake_cloud.landing_zone import RESOURCE_GROUP, make_config
from lzctl.client import ControlPlaneError
from lzctl.models import NsgAttributes, ResourceDescriptor, ResourceKind
from lzctl.prober import ExistenceProber
from lzctl.report import Action, ExecutionReport, ExecutionReporter, Outcome
from lzctl.steps import StepRunner


def runner_for(cloud: FakeControlPlane, preview: bool = False) -> StepRunner:
    config = make_config(preview_only=preview)
    report = ExecutionReport(operation="provision", preview=preview)
    return StepRunner(config, cloud, ExistenceProber(cloud), ExecutionReporter(report))


def nsg(cloud: FakeControlPlane) -> ResourceDescriptor:
    return ResourceDescriptor(
        kind=ResourceKind.NSG,
        name="myapp-dev-app-nsg",
        scope=cloud.rg_scope(RESOURCE_GROUP),
        attributes=NsgAttributes(location="canadacentral"),
    )


class TestEnsure:
    """Tests for create-if-absent."""

    def test_creates_when_absent(self, cloud: FakeControlPlane) -> None:
        result = runner_for(cloud).ensure(nsg(cloud))

        assert result.step.outcome == Outcome.CREATED
        assert not result.existed
        assert result.descriptor is not None
        assert result.descriptor.id is not None

    def test_skips_when_present(self, cloud: FakeControlPlane) -> None:
        cloud.add_nsg(RESOURCE_GROUP, "myapp-dev-app-nsg")

        result = runner_for(cloud).ensure(nsg(cloud))

        assert (result.step.action, result.step.outcome) == (Action.PROBE, Outcome.SKIPPED)
        assert result.existed
        assert cloud.mutating_calls == []

    def test_blocked(self, cloud: FakeControlPlane) -> None:
        result = runner_for(cloud).ensure(nsg(cloud), blocked_by="VNet 'spoke' is failed")

        assert result.step.outcome == Outcome.BLOCKED
        assert result.blocker() == "NSG 'myapp-dev-app-nsg' is blocked"
        assert cloud.calls == []

    def test_probe_error_fails(self, cloud: FakeControlPlane) -> None:
        cloud.inject_error("get", ResourceKind.NSG)

        result = runner_for(cloud).ensure(nsg(cloud))

        assert (result.step.action, result.step.outcome) == (Action.PROBE, Outcome.FAILED)
        assert cloud.mutating_calls == []

    def test_preview_plans(self, cloud: FakeControlPlane) -> None:
        result = runner_for(cloud, preview=True).ensure(nsg(cloud))

        assert result.step.outcome == Outcome.PLANNED
        assert result.ok
        assert cloud.mutating_calls == []


class TestMutate:
    """Tests for error classification on mutating calls."""

    def test_policy_denial_is_tolerated(self, cloud: FakeControlPlane) -> None:
        cloud.deny_by_policy("create", ResourceKind.NSG)
        runner = runner_for(cloud)

        result = runner.ensure(nsg(cloud))

        assert result.step.outcome == Outcome.TOLERATED
        assert not result.ok
        assert result.blocker() == "NSG 'myapp-dev-app-nsg' is tolerated"
        assert "denied by Azure Policy" in runner.reporter.report.remediation[0]
        assert runner.reporter.report.success

    def test_other_errors_fail(self, cloud: FakeControlPlane) -> None:
        cloud.inject_error("create", ResourceKind.NSG)
        runner = runner_for(cloud)

        result = runner.ensure(nsg(cloud))

        assert result.step.outcome == Outcome.FAILED
        assert result.step.detail == "injected failure"
        assert runner.reporter.report.remediation == []

    def test_exists_codes_skip(self, cloud: FakeControlPlane) -> None:
        target = nsg(cloud)

        def conflict() -> None:
            raise ControlPlaneError("already there", code="Conflict", status_code=409)

        result = runner_for(cloud).mutate(
            Action.CREATE, target, conflict, exists_codes=frozenset({"Conflict"})
        )

        assert result.step.outcome == Outcome.SKIPPED
        assert result.existed

    def test_detail_recorded(self, cloud: FakeControlPlane) -> None:
        cloud.add_nsg(RESOURCE_GROUP, "myapp-dev-app-nsg")
        target = nsg(cloud)

        result = runner_for(cloud).mutate(
            Action.DELETE,
            target,
            lambda: cloud.delete(target.kind, target.name, target.scope),
            detail="dependent of Subnet 'spoke/app'",
        )

        assert result.step.outcome == Outcome.DELETED
        assert result.step.detail == "dependent of Subnet 'spoke/app'"
