"""Landing zone spec file loading with validation.

A spec file holds the values an operator would otherwise pass as flags.
Flags given on the command line override the file.

SECURITY: File size is checked before reading. Input validation is performed
at the boundary; RunConfig validates the merged result again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import DEFAULT_STORAGE_CONTAINER, validate_cidr

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 64 * 1024


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


class _SpecModel(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}


class NetworkSpec(_SpecModel):
    vnet_name: Annotated[str, Field(min_length=1, max_length=64, alias="vnetName")]
    address_space: str = Field(alias="addressSpace")
    roles: list[str] | None = None
    delegations: dict[str, str] = Field(default_factory=dict)

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: str) -> str:
        error = validate_cidr(v)
        if error:
            raise ValueError(error)
        return v


class IdentitySpec(_SpecModel):
    name: Annotated[str, Field(min_length=1, max_length=128)]
    github_repo: str = Field(alias="githubRepo")
    environment: str
    roles: list[str] = Field(default_factory=list)
    role_scope: str | None = Field(None, alias="roleScope")
    branches: list[str] = Field(default_factory=list)
    pull_requests: bool = Field(False, alias="pullRequests")
    create_github_secrets: bool = Field(False, alias="createGithubSecrets")


class StorageSpec(_SpecModel):
    account_name: str | None = Field(None, alias="accountName")
    container_name: str = Field(DEFAULT_STORAGE_CONTAINER, alias="containerName")


class TeardownSpec(_SpecModel):
    vnet_name: str | None = Field(None, alias="vnetName")
    subnets: list[str] = Field(default_factory=list)
    delete_nsgs: bool = Field(True, alias="deleteNsgs")


class TimingSpec(_SpecModel):
    poll_interval_seconds: Annotated[float, Field(gt=0)] | None = Field(
        None, alias="pollIntervalSeconds"
    )
    propagation_timeout_seconds: Annotated[float, Field(gt=0)] | None = Field(
        None, alias="propagationTimeoutSeconds"
    )
    identity_propagation_seconds: Annotated[float, Field(ge=0)] | None = Field(
        None, alias="identityPropagationSeconds"
    )
    job_poll_interval_seconds: Annotated[float, Field(gt=0)] | None = Field(
        None, alias="jobPollIntervalSeconds"
    )
    job_timeout_seconds: Annotated[float, Field(gt=0)] | None = Field(
        None, alias="jobTimeoutSeconds"
    )


class LandingZoneSpec(_SpecModel):
    """Top-level spec file document."""

    subscription_id: str | None = Field(None, alias="subscriptionId")
    tenant_id: str | None = Field(None, alias="tenantId")
    resource_group: str | None = Field(None, alias="resourceGroup")
    location: str | None = None
    network: NetworkSpec | None = None
    identity: IdentitySpec | None = None
    storage: StorageSpec | None = None
    teardown: TeardownSpec | None = None
    timing: TimingSpec = Field(default_factory=TimingSpec)

    def to_values(self) -> dict[str, Any]:
        """Flatten into the same keys the CLI options use (None = unset)."""
        values: dict[str, Any] = {
            "subscription_id": self.subscription_id,
            "tenant_id": self.tenant_id,
            "resource_group": self.resource_group,
            "location": self.location,
        }
        if self.network is not None:
            values.update(
                vnet_name=self.network.vnet_name,
                address_space=self.network.address_space,
                subnet_roles=tuple(self.network.roles) if self.network.roles else None,
                delegations=dict(self.network.delegations),
            )
        if self.identity is not None:
            values.update(
                identity_name=self.identity.name,
                github_repo=self.identity.github_repo,
                environment=self.identity.environment,
                assign_roles=tuple(self.identity.roles),
                role_scope=self.identity.role_scope,
                federate_branches=tuple(self.identity.branches),
                federate_pull_requests=self.identity.pull_requests,
                create_github_secrets=self.identity.create_github_secrets,
            )
        if self.storage is not None:
            values.update(
                create_storage=True,
                storage_account=self.storage.account_name,
                storage_container=self.storage.container_name,
            )
        if self.teardown is not None:
            values.update(
                teardown_vnet_name=self.teardown.vnet_name,
                subnets=tuple(self.teardown.subnets),
                delete_nsgs=self.teardown.delete_nsgs,
            )
        values["timing"] = self.timing.model_dump(exclude_none=True)
        return values


def load_spec(spec_path: Path) -> LandingZoneSpec:
    """Load and validate a landing zone spec from YAML.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    try:
        spec = LandingZoneSpec.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise SpecLoadError(f"Validation failed for {spec_path}:\n" + "\n".join(errors)) from e

    logger.info("Loaded landing zone spec from %s", spec_path)
    return spec
