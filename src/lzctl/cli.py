"""Landing zone CLI (lzctl).

Usage:
    lzctl provision -s <sub> -g myapp-dev-networking --vnet-name myapp-dev-vwan-spoke \\
        --address-space 10.0.0.0/24 -n myapp-dev-github -r myorg/myapp -e dev \\
        --assign-roles Contributor --create-storage
    lzctl teardown -s <sub> -g myapp-dev-networking --vnet-name myapp-dev-vwan-spoke \\
        --subnet myapp-dev-web-subnet
    lzctl version

Every parameter is validated before any credential or client is created.
``--preview`` (alias ``--dry-run``) runs every read-only step and records what
would change without changing anything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .client import ArmControlPlaneClient, CloudControlPlaneClient
from .config import (
    DEFAULT_LOCATION,
    DEFAULT_STORAGE_CONTAINER,
    ConfigurationError,
    IdentitySettings,
    NetworkSettings,
    RunConfig,
    StorageSettings,
    TeardownSettings,
    TimingConfig,
    generate_storage_account_name,
)
from .gate import ConfirmationGate, UserAbort
from .provisioning import ProvisioningOrchestrator
from .report import ExecutionReport, ExecutionReporter, setup_logging
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, load_spec
from .teardown import TeardownOrchestrator

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
LOG_FORMATS = ("console", "json")


def create_client(
    subscription_id: str, managed_identity_client_id: str | None = None
) -> CloudControlPlaneClient:
    """Build the production control-plane client."""
    credential = get_credential(managed_identity_client_id)
    return ArmControlPlaneClient(credential, subscription_id)


def _split_csv(value: str | None) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_delegations(items: tuple[str, ...]) -> dict[str, str] | None:
    if not items:
        return None
    delegations: dict[str, str] = {}
    for item in items:
        role, sep, service = item.partition("=")
        if not sep or not role.strip():
            raise click.BadParameter(
                f"expected ROLE=SERVICE (empty SERVICE disables), got '{item}'",
                param_hint="--delegation",
            )
        delegations[role.strip()] = service.strip()
    return delegations


def merge_values(spec_values: dict[str, Any], flag_values: dict[str, Any]) -> dict[str, Any]:
    """Flags win over spec file values; unset flags (None / empty) do not."""
    merged = dict(spec_values)
    for key, value in flag_values.items():
        if value is None or value == ():
            continue
        if isinstance(value, bool) and not value:
            merged.setdefault(key, False)
            continue
        merged[key] = value
    return merged


def load_spec_values(spec_file: Path | None) -> dict[str, Any]:
    if spec_file is None:
        return {}
    try:
        return load_spec(spec_file).to_values()
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def build_run_config(values: dict[str, Any], *, teardown: bool = False) -> RunConfig:
    """Assemble and validate a RunConfig from merged option values.

    Raises:
        ConfigurationError: If any value is invalid.
    """
    network = identity = storage = teardown_settings = None

    if teardown:
        teardown_settings = TeardownSettings(
            vnet_name=values.get("teardown_vnet_name") or values.get("vnet_name") or "",
            subnet_names=tuple(values.get("subnets") or ()),
            delete_nsgs=values.get("delete_nsgs", True),
        )
    else:
        if values.get("vnet_name") or values.get("address_space"):
            network_kwargs: dict[str, Any] = {
                "vnet_name": values.get("vnet_name") or "",
                "address_space": values.get("address_space") or "",
                "delegation_overrides": values.get("delegations") or {},
            }
            if values.get("subnet_roles"):
                network_kwargs["roles"] = tuple(values["subnet_roles"])
            network = NetworkSettings(**network_kwargs)

        if values.get("identity_name") or values.get("github_repo"):
            identity = IdentitySettings(
                identity_name=values.get("identity_name") or "",
                github_repo=values.get("github_repo") or "",
                environment=values.get("environment") or "",
                roles=tuple(values.get("assign_roles") or ()),
                role_scope=values.get("role_scope"),
                federated_branches=tuple(values.get("federate_branches") or ()),
                federate_pull_requests=bool(values.get("federate_pull_requests")),
                create_github_secrets=bool(values.get("create_github_secrets")),
            )

        if values.get("create_storage"):
            account = values.get("storage_account")
            if not account and identity is not None:
                account = generate_storage_account_name(identity.github_repo, identity.environment)
                logger.info(f"Generated storage account name: {account}")
            storage = StorageSettings(
                account_name=account or "",
                container_name=values.get("storage_container") or DEFAULT_STORAGE_CONTAINER,
            )

    return RunConfig(
        subscription_id=values.get("subscription_id") or "",
        resource_group=values.get("resource_group") or "",
        location=values.get("location") or DEFAULT_LOCATION,
        tenant_id=values.get("tenant_id"),
        network=network,
        identity=identity,
        storage=storage,
        teardown=teardown_settings,
        preview_only=bool(values.get("preview")),
        force=bool(values.get("force")),
        create_resource_group=values.get("create_resource_group", True),
        timing=TimingConfig(**values.get("timing", {})),
    )


def _validated_config(values: dict[str, Any], *, teardown: bool = False) -> RunConfig:
    try:
        return build_run_config(values, teardown=teardown)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _connect(config: RunConfig, managed_identity_client_id: str | None) -> CloudControlPlaneClient:
    try:
        return create_client(config.subscription_id, managed_identity_client_id)
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e


def _finish(ctx: click.Context, reporter: ExecutionReporter) -> None:
    reporter.emit_summary()
    ctx.exit(0 if reporter.report.success else 1)


def common_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by provision and teardown."""
    options = [
        click.option(
            "--subscription-id", "-s", envvar="AZURE_SUBSCRIPTION_ID", help="Subscription id"
        ),
        click.option("--tenant-id", envvar="AZURE_TENANT_ID", help="Tenant id"),
        click.option("--resource-group", "-g", help="Resource group name"),
        click.option("--location", "-l", help=f"Azure region (default: {DEFAULT_LOCATION})"),
        click.option(
            "--spec-file",
            "-f",
            type=click.Path(exists=False, dir_okay=False, path_type=Path),
            help="YAML spec file; flags override its values",
        ),
        click.option(
            "--preview",
            "--dry-run",
            "preview",
            is_flag=True,
            help="Show what would change without changing anything",
        ),
        click.option("--force", is_flag=True, help="Skip interactive confirmation"),
        click.option(
            "--managed-identity-client-id",
            envvar="LZCTL_MANAGED_IDENTITY_CLIENT_ID",
            help="Authenticate as this user-assigned managed identity instead of az login",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.version_option(version=VERSION, prog_name="lzctl")
@click.option(
    "--log-format",
    type=click.Choice(LOG_FORMATS),
    default="console",
    show_default=True,
    help="Log output format",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(log_format: str, verbose: bool) -> None:
    """Azure landing zone lifecycle: provision and tear down, idempotently."""
    setup_logging(log_format, verbose)


@cli.command()
@common_options
@click.option("--vnet-name", help="Virtual network to provision")
@click.option("--address-space", help="VNet address space, e.g. 10.0.0.0/24")
@click.option("--subnet-roles", help="Comma-separated subnet roles (default: all)")
@click.option(
    "--delegation",
    "delegations",
    multiple=True,
    help="Override a role's delegation: ROLE=SERVICE (empty SERVICE disables)",
)
@click.option("--identity-name", "-n", help="User-assigned managed identity name")
@click.option("--github-repo", "-r", help="GitHub repository (owner/repo)")
@click.option("--environment", "-e", help="GitHub environment name")
@click.option("--assign-roles", help="Comma-separated roles to assign to the identity")
@click.option(
    "--role-scope",
    "--contributor-scope",
    "role_scope",
    help="ARM scope for role assignments (default: the subscription)",
)
@click.option(
    "--federate-branch",
    "federate_branches",
    multiple=True,
    help="Also trust workflows on this branch (repeatable)",
)
@click.option("--federate-pull-requests", is_flag=True, help="Also trust pull request workflows")
@click.option("--create-storage", is_flag=True, help="Create the Terraform state backend")
@click.option("--storage-account", help="Storage account name (default: generated)")
@click.option(
    "--storage-container", help=f"Storage container name (default: {DEFAULT_STORAGE_CONTAINER})"
)
@click.option(
    "--create-github-secrets", is_flag=True, help="Create the GitHub environment and its secrets"
)
@click.option(
    "--no-create-resource-group",
    "no_create_resource_group",
    is_flag=True,
    help="Fail instead of creating a missing resource group",
)
@click.pass_context
def provision(
    ctx: click.Context,
    spec_file: Path | None,
    managed_identity_client_id: str | None,
    subnet_roles: str | None,
    delegations: tuple[str, ...],
    assign_roles: str | None,
    no_create_resource_group: bool,
    **flags: Any,
) -> None:
    """Provision network, GitHub OIDC identity and state backend."""
    flags.update(
        subnet_roles=_split_csv(subnet_roles),
        assign_roles=_split_csv(assign_roles),
        delegations=_parse_delegations(delegations),
    )
    values = merge_values(load_spec_values(spec_file), flags)
    if no_create_resource_group:
        values["create_resource_group"] = False
    config = _validated_config(values)

    client = _connect(config, managed_identity_client_id)
    orchestrator = ProvisioningOrchestrator(config, client)
    orchestrator.run()

    reporter = orchestrator.reporter
    if config.identity is not None and not config.identity.create_github_secrets:
        reporter.emit_manual_configuration()
    _finish(ctx, reporter)


@cli.command()
@common_options
@click.option("--vnet-name", "teardown_vnet_name", help="VNet that holds the subnets")
@click.option("--subnet", "subnets", multiple=True, help="Subnet to delete (repeatable)")
@click.option("--keep-nsgs", is_flag=True, help="Do not delete the subnets' NSGs")
@click.pass_context
def teardown(
    ctx: click.Context,
    spec_file: Path | None,
    managed_identity_client_id: str | None,
    keep_nsgs: bool,
    **flags: Any,
) -> None:
    """Delete subnets after their dependents, then their NSGs."""
    values = merge_values(load_spec_values(spec_file), flags)
    if keep_nsgs:
        values["delete_nsgs"] = False
    config = _validated_config(values, teardown=True)

    client = _connect(config, managed_identity_client_id)
    reporter = ExecutionReporter(ExecutionReport(operation="teardown", preview=config.preview_only))
    orchestrator = TeardownOrchestrator(
        config, client, reporter=reporter, gate=ConfirmationGate(config)
    )
    try:
        orchestrator.run()
    except UserAbort as e:
        click.secho(str(e), fg="yellow")
        ctx.exit(0)
    _finish(ctx, reporter)


@cli.command()
def version() -> None:
    """Show the lzctl version."""
    click.echo(f"lzctl {VERSION}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
