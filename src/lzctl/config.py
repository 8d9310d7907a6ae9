"""Run configuration with validation.

Every invocation builds exactly one immutable RunConfig. It is validated at
construction time so that malformed input (bad CIDR, bad repository
identifier, bad GUID) is rejected before any client is built or any remote
call is made. Components receive the RunConfig through their constructors;
there are no module-level mode flags.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Timing defaults (seconds)
DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_PROPAGATION_TIMEOUT_SECONDS = 300
DEFAULT_IDENTITY_PROPAGATION_SECONDS = 10
DEFAULT_JOB_POLL_INTERVAL_SECONDS = 10
DEFAULT_JOB_TIMEOUT_SECONDS = 600
MIN_POLL_INTERVAL_SECONDS = 1
MAX_WAIT_TIMEOUT_SECONDS = 3600

DEFAULT_LOCATION = "canadacentral"
DEFAULT_STORAGE_CONTAINER = "tfstate"
TEARDOWN_CONFIRMATION_LITERAL = "DELETE"

MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_VNET_NAME_LENGTH = 64
MAX_IDENTITY_NAME_LENGTH = 128
MIN_VNET_PREFIX_LENGTH = 8
MAX_VNET_PREFIX_LENGTH = 25

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_CIDR_PATTERN = r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})/(\d{1,2})$"
VALID_REPOSITORY_PATTERN = r"^[a-zA-Z0-9._-]+/[a-zA-Z0-9._-]+$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"
VALID_RESOURCE_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$"
VALID_ENVIRONMENT_PATTERN = r"^[a-zA-Z0-9._-]{1,255}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_STORAGE_ACCOUNT_PATTERN = r"^[a-z0-9]{3,24}$"
VALID_STORAGE_CONTAINER_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"
VALID_BRANCH_PATTERN = r"^[A-Za-z0-9._/-]+$"


def validate_cidr(value: str) -> str | None:
    """Validate a strict ``a.b.c.d/n`` IPv4 CIDR.

    Returns:
        An error message, or None when the value is valid.
    """
    match = re.match(VALID_CIDR_PATTERN, value)
    if not match:
        return f"must match a.b.c.d/n: {value}"
    octets = [int(g) for g in match.groups()[:4]]
    if any(o > 255 for o in octets):
        return f"octets must be between 0 and 255: {value}"
    if int(match.group(5)) > 32:
        return f"prefix length must be between 0 and 32: {value}"
    try:
        ipaddress.IPv4Network(value, strict=True)
    except ValueError:
        return f"host bits must be zero: {value}"
    return None


def strip_networking_suffix(resource_group: str) -> str:
    """Landing zone networking groups are named ``<project>-<env>-networking``."""
    if resource_group.endswith("-networking"):
        return resource_group[: -len("-networking")]
    return resource_group


@dataclass(frozen=True)
class TimingConfig:
    """Poll intervals and timeouts handed to the propagation waiter."""

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    propagation_timeout_seconds: float = DEFAULT_PROPAGATION_TIMEOUT_SECONDS
    identity_propagation_seconds: float = DEFAULT_IDENTITY_PROPAGATION_SECONDS
    job_poll_interval_seconds: float = DEFAULT_JOB_POLL_INTERVAL_SECONDS
    job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS

    def errors(self) -> list[str]:
        errors: list[str] = []
        for name in ("poll_interval_seconds", "job_poll_interval_seconds"):
            value = getattr(self, name)
            if value < MIN_POLL_INTERVAL_SECONDS:
                errors.append(f"{name} must be at least {MIN_POLL_INTERVAL_SECONDS}s")
        for name in ("propagation_timeout_seconds", "job_timeout_seconds"):
            value = getattr(self, name)
            if not 0 < value <= MAX_WAIT_TIMEOUT_SECONDS:
                errors.append(f"{name} must be between 0 and {MAX_WAIT_TIMEOUT_SECONDS}s")
        if self.identity_propagation_seconds < 0:
            errors.append("identity_propagation_seconds cannot be negative")
        return errors


@dataclass(frozen=True)
class NetworkSettings:
    """Virtual network to provision and the subnet roles carved out of it."""

    vnet_name: str
    address_space: str
    roles: tuple[str, ...] = ("app", "privateendpoints", "web", "data")
    # role -> delegation service name; "" disables the role's default delegation
    delegation_overrides: dict[str, str] = field(default_factory=dict)

    def errors(self) -> list[str]:
        from .topology import SUBNET_ROLES

        errors: list[str] = []
        if not self.vnet_name:
            errors.append("VNet name is required")
        elif len(self.vnet_name) > MAX_VNET_NAME_LENGTH or not re.match(
            VALID_RESOURCE_NAME_PATTERN, self.vnet_name
        ):
            errors.append(f"Invalid VNet name: {self.vnet_name}")

        cidr_error = validate_cidr(self.address_space)
        if cidr_error:
            errors.append(f"VNet address space {cidr_error}")
        else:
            prefix = int(self.address_space.split("/")[1])
            if not MIN_VNET_PREFIX_LENGTH <= prefix <= MAX_VNET_PREFIX_LENGTH:
                errors.append(
                    f"VNet prefix length must be between /{MIN_VNET_PREFIX_LENGTH} "
                    f"and /{MAX_VNET_PREFIX_LENGTH}: {self.address_space}"
                )

        if not self.roles:
            errors.append("At least one subnet role is required")
        for role in self.roles:
            if role not in SUBNET_ROLES:
                errors.append(f"Unknown subnet role '{role}', expected one of {list(SUBNET_ROLES)}")
        if len(set(self.roles)) != len(self.roles):
            errors.append("Subnet roles must be unique")
        for role in self.delegation_overrides:
            if role not in self.roles:
                errors.append(f"Delegation override for role '{role}' which is not provisioned")
        return errors


@dataclass(frozen=True)
class IdentitySettings:
    """Managed identity, its GitHub OIDC trust and its role assignments."""

    identity_name: str
    github_repo: str
    environment: str
    roles: tuple[str, ...] = ()
    role_scope: str | None = None
    federated_branches: tuple[str, ...] = ()
    federate_pull_requests: bool = False
    create_github_secrets: bool = False

    def errors(self) -> list[str]:
        errors: list[str] = []
        if not self.identity_name:
            errors.append("Identity name is required")
        elif len(self.identity_name) > MAX_IDENTITY_NAME_LENGTH or not re.match(
            VALID_RESOURCE_NAME_PATTERN, self.identity_name
        ):
            errors.append(f"Invalid identity name: {self.identity_name}")

        if not re.match(VALID_REPOSITORY_PATTERN, self.github_repo or ""):
            errors.append(
                f"GitHub repository must be in owner/repository format: '{self.github_repo}'"
            )
        if not re.match(VALID_ENVIRONMENT_PATTERN, self.environment or ""):
            errors.append(f"Invalid environment name: '{self.environment}'")

        for role in self.roles:
            if not role.strip():
                errors.append("Role names cannot be empty")
        if self.role_scope is not None and not self.role_scope.startswith("/"):
            errors.append(f"Role scope must be an ARM scope starting with '/': {self.role_scope}")
        for branch in self.federated_branches:
            if not re.match(VALID_BRANCH_PATTERN, branch):
                errors.append(f"Invalid branch name: {branch}")
        return errors

    @property
    def repository_name(self) -> str:
        return self.github_repo.split("/", 1)[1]


@dataclass(frozen=True)
class StorageSettings:
    """Terraform state backend: storage account + blob container."""

    account_name: str
    container_name: str = DEFAULT_STORAGE_CONTAINER

    def errors(self) -> list[str]:
        errors: list[str] = []
        if not re.match(VALID_STORAGE_ACCOUNT_PATTERN, self.account_name):
            errors.append(
                "Storage account name must be 3-24 characters of lowercase letters and "
                f"numbers: '{self.account_name}'"
            )
        if not re.match(VALID_STORAGE_CONTAINER_PATTERN, self.container_name):
            errors.append(f"Invalid storage container name: '{self.container_name}'")
        return errors


@dataclass(frozen=True)
class TeardownSettings:
    """Subnets to tear down inside an existing VNet."""

    vnet_name: str
    subnet_names: tuple[str, ...]
    delete_nsgs: bool = True

    def errors(self) -> list[str]:
        errors: list[str] = []
        if not self.vnet_name:
            errors.append("VNet name is required for teardown")
        if not self.subnet_names:
            errors.append("At least one subnet is required for teardown")
        for name in self.subnet_names:
            if not re.match(VALID_RESOURCE_NAME_PATTERN, name):
                errors.append(f"Invalid subnet name: {name}")
        if len(set(self.subnet_names)) != len(self.subnet_names):
            errors.append("Subnet names must be unique")
        return errors


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for a single orchestrator invocation.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    subscription_id: str
    resource_group: str
    location: str = DEFAULT_LOCATION
    tenant_id: str | None = None

    network: NetworkSettings | None = None
    identity: IdentitySettings | None = None
    storage: StorageSettings | None = None
    teardown: TeardownSettings | None = None

    # Behavior
    preview_only: bool = False
    force: bool = False
    create_resource_group: bool = True

    timing: TimingConfig = field(default_factory=TimingConfig)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("Subscription id is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"Subscription id must be a valid GUID: {self.subscription_id}")

        if self.tenant_id and not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"Tenant id must be a valid GUID: {self.tenant_id}")

        if not self.resource_group:
            errors.append("Resource group is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"Resource group name exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group):
            errors.append(f"Invalid resource group name: {self.resource_group}")

        if not re.match(VALID_LOCATION_PATTERN, self.location or ""):
            errors.append(f"Location must be a valid Azure region: {self.location}")

        for section in (self.network, self.identity, self.storage, self.teardown):
            if section is not None:
                errors.extend(section.errors())
        errors.extend(self.timing.errors())

        if self.storage is not None and self.identity is None:
            errors.append("Storage backend requires an identity to grant state access to")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resource_group_prefix(self) -> str:
        """Prefix shared by convention-derived subnet and NSG names."""
        return strip_networking_suffix(self.resource_group)

    @property
    def subscription_scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"


def generate_storage_account_name(github_repo: str, environment: str) -> str:
    """Derive a compliant storage account name: ``tfstate{repo}{env}``.

    Lowercase letters and digits only, truncated to 24 characters and padded
    to the 3 character minimum.
    """
    repo_name = github_repo.split("/")[-1].lower()
    repo_name = re.sub(r"[^a-z0-9]", "", repo_name)
    env_name = re.sub(r"[^a-z0-9]", "", environment.lower())

    name = f"tfstate{repo_name}{env_name}"[:24]
    if len(name) < 3:
        name = f"{name}abc"
    return name
