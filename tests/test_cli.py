"""Tests for the lzctl command line."""

from pathlib import Path
from unittest import mock

import pytest
from click.testing import CliRunner

from fake_cloud import SUBSCRIPTION_ID, FakeControlPlane
from fake_cloud.landing_zone import ADDRESS_SPACE, RESOURCE_GROUP, VNET_NAME
from lzctl.cli import VERSION, build_run_config, cli, merge_values
from lzctl.models import ResourceKind

PROVISION_ARGS = [
    "provision",
    "-s",
    SUBSCRIPTION_ID,
    "-g",
    RESOURCE_GROUP,
    "--vnet-name",
    VNET_NAME,
    "--address-space",
    ADDRESS_SPACE,
]


@pytest.fixture(autouse=True)
def no_log_setup():
    """Keep CLI invocations from installing handlers on the root logger."""
    with mock.patch("lzctl.cli.setup_logging"):
        yield


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def create_client(cloud: FakeControlPlane):
    with mock.patch("lzctl.cli.create_client", return_value=cloud) as factory:
        yield factory


class TestProvisionCommand:
    """Tests for ``lzctl provision``."""

    def test_invalid_cidr_fails_before_connecting(
        self, runner: CliRunner, create_client: mock.Mock
    ) -> None:
        args = [*PROVISION_ARGS[:-1], "10.0.0.1/24"]

        result = runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "host bits must be zero" in result.output
        create_client.assert_not_called()

    def test_invalid_subscription(self, runner: CliRunner, create_client: mock.Mock) -> None:
        args = ["provision", "-s", "not-a-guid", "-g", RESOURCE_GROUP]

        result = runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "Subscription id must be a valid GUID" in result.output
        create_client.assert_not_called()

    def test_preview_succeeds_without_changes(
        self, runner: CliRunner, create_client: mock.Mock, cloud: FakeControlPlane
    ) -> None:
        result = runner.invoke(cli, [*PROVISION_ARGS, "--preview"])

        assert result.exit_code == 0, result.output
        assert "Provision summary (preview, no changes made)" in result.output
        assert "Result: SUCCESS" in result.output
        assert cloud.mutating_calls == []
        create_client.assert_called_once_with(SUBSCRIPTION_ID, None)

    def test_dry_run_alias(self, runner: CliRunner, create_client: mock.Mock) -> None:
        result = runner.invoke(cli, [*PROVISION_ARGS, "--dry-run"])

        assert result.exit_code == 0
        assert "preview" in result.output

    def test_failure_exits_nonzero(self, runner: CliRunner) -> None:
        empty = FakeControlPlane()
        with mock.patch("lzctl.cli.create_client", return_value=empty):
            result = runner.invoke(cli, [*PROVISION_ARGS, "--no-create-resource-group"])

        assert result.exit_code == 1
        assert "Result: FAILED" in result.output
        assert empty.mutating_calls == []

    def test_spec_file_with_flag_override(
        self,
        runner: CliRunner,
        create_client: mock.Mock,
        cloud: FakeControlPlane,
        tmp_path: Path,
    ) -> None:
        spec = tmp_path / "lz.yaml"
        spec.write_text(
            f"subscriptionId: {SUBSCRIPTION_ID}\n"
            f"resourceGroup: {RESOURCE_GROUP}\n"
            "network:\n"
            f"  vnetName: {VNET_NAME}\n"
            "  addressSpace: 10.9.0.0/24\n"
        )

        result = runner.invoke(
            cli,
            ["provision", "-f", str(spec), "--address-space", ADDRESS_SPACE],
            env={"AZURE_SUBSCRIPTION_ID": None},
        )

        assert result.exit_code == 0, result.output
        vnet = cloud.lookup(ResourceKind.VNET, VNET_NAME, cloud.rg_scope(RESOURCE_GROUP))
        assert vnet is not None
        assert vnet.attributes.address_prefixes == [ADDRESS_SPACE]  # type: ignore[union-attr]

    def test_secret_in_environment_refused(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, [*PROVISION_ARGS, "--preview"], env={"AZURE_CLIENT_SECRET": "s3cret"}
        )

        assert result.exit_code == 1
        assert "AZURE_CLIENT_SECRET" in result.output

    def test_invalid_delegation_flag(self, runner: CliRunner, create_client: mock.Mock) -> None:
        result = runner.invoke(cli, [*PROVISION_ARGS, "--delegation", "app"])

        assert result.exit_code == 2
        assert "ROLE=SERVICE" in result.output


class TestTeardownCommand:
    """Tests for ``lzctl teardown``."""

    @pytest.fixture
    def subnet_present(self, cloud: FakeControlPlane) -> FakeControlPlane:
        cloud.add_vnet(RESOURCE_GROUP, VNET_NAME, ADDRESS_SPACE)
        cloud.add_subnet(RESOURCE_GROUP, VNET_NAME, "myapp-dev-web-subnet", "10.0.0.160/28")
        return cloud

    def args(self, *extra: str) -> list[str]:
        return [
            "teardown",
            "-s",
            SUBSCRIPTION_ID,
            "-g",
            RESOURCE_GROUP,
            "--vnet-name",
            VNET_NAME,
            "--subnet",
            "myapp-dev-web-subnet",
            *extra,
        ]

    def test_abort_exits_zero(
        self, runner: CliRunner, create_client: mock.Mock, subnet_present: FakeControlPlane
    ) -> None:
        result = runner.invoke(cli, self.args(), input="no\n")

        assert result.exit_code == 0
        assert "cancelled" in result.output
        assert subnet_present.mutating_calls == []

    def test_confirmed_teardown(
        self, runner: CliRunner, create_client: mock.Mock, subnet_present: FakeControlPlane
    ) -> None:
        result = runner.invoke(cli, self.args(), input="DELETE\n")

        assert result.exit_code == 0, result.output
        assert [c.kind for c in subnet_present.calls_for("delete")] == [ResourceKind.SUBNET]

    def test_keep_nsgs(
        self, runner: CliRunner, create_client: mock.Mock, subnet_present: FakeControlPlane
    ) -> None:
        result = runner.invoke(cli, self.args("--force", "--keep-nsgs"))

        assert result.exit_code == 0
        assert "NSG" not in result.output.split("Teardown summary")[1]

    def test_subnet_required(self, runner: CliRunner, create_client: mock.Mock) -> None:
        args = ["teardown", "-s", SUBSCRIPTION_ID, "-g", RESOURCE_GROUP, "--vnet-name", VNET_NAME]

        result = runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "At least one subnet is required for teardown" in result.output


class TestVersion:
    """Tests for version output."""

    def test_version_command(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert result.output.strip() == f"lzctl {VERSION}"


class TestMergeValues:
    """Tests for combining spec file and flag values."""

    def test_flags_override_spec(self) -> None:
        merged = merge_values({"location": "eastus"}, {"location": "canadacentral"})

        assert merged["location"] == "canadacentral"

    def test_unset_flags_keep_spec(self) -> None:
        merged = merge_values(
            {"location": "eastus", "subnets": ("a",), "force": True},
            {"location": None, "subnets": (), "force": False},
        )

        assert merged == {"location": "eastus", "subnets": ("a",), "force": True}

    def test_false_flag_defaults_when_spec_silent(self) -> None:
        assert merge_values({}, {"force": False}) == {"force": False}


class TestBuildRunConfig:
    """Tests for assembling a RunConfig from option values."""

    def test_storage_name_generated(self) -> None:
        config = build_run_config(
            {
                "subscription_id": SUBSCRIPTION_ID,
                "resource_group": RESOURCE_GROUP,
                "identity_name": "myapp-dev-github",
                "github_repo": "myorg/myapp",
                "environment": "dev",
                "create_storage": True,
            }
        )

        assert config.storage is not None
        assert config.storage.account_name == "tfstatemyappdev"
        assert config.network is None

    def test_timing_from_values(self) -> None:
        config = build_run_config(
            {
                "subscription_id": SUBSCRIPTION_ID,
                "resource_group": RESOURCE_GROUP,
                "timing": {"job_timeout_seconds": 120},
            }
        )

        assert config.timing.job_timeout_seconds == 120
