"""Typed resource descriptors.

Remote resource bodies are decoded exactly once, at the control-plane client
boundary, into a ResourceDescriptor whose ``attributes`` is the pydantic
variant for its kind. Orchestration code reads typed fields only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator


class ResourceKind(str, Enum):
    """The fixed set of resource kinds this tool manages."""

    RESOURCE_GROUP = "ResourceGroup"
    VNET = "VNet"
    SUBNET = "Subnet"
    NSG = "NSG"
    IDENTITY = "Identity"
    FEDERATED_CREDENTIAL = "FederatedCredential"
    ROLE_ASSIGNMENT = "RoleAssignment"
    STORAGE_ACCOUNT = "StorageAccount"
    STORAGE_CONTAINER = "StorageContainer"
    NIC = "NIC"
    PRIVATE_ENDPOINT = "PrivateEndpoint"
    CONTAINER_ENVIRONMENT = "ContainerEnvironment"
    CONTAINER_APP = "ContainerApp"


# Kinds addressed through a parent resource (Scope.parent)
CHILD_KINDS: dict[ResourceKind, ResourceKind] = {
    ResourceKind.SUBNET: ResourceKind.VNET,
    ResourceKind.FEDERATED_CREDENTIAL: ResourceKind.IDENTITY,
    ResourceKind.STORAGE_CONTAINER: ResourceKind.STORAGE_ACCOUNT,
}


class DependencyKind(str, Enum):
    """How a dependent resource references the resource being torn down."""

    ATTACHED_NIC = "AttachedNIC"
    PRIVATE_ENDPOINT_LINK = "PrivateEndpointLink"
    DELEGATED_ENVIRONMENT = "DelegatedEnvironment"


@dataclass(frozen=True)
class Scope:
    """Where a resource lives.

    Attributes:
        subscription_id: Owning subscription.
        resource_group: Owning resource group (None for subscription-level kinds).
        parent: Parent resource name for child kinds (VNet of a subnet,
            identity of a federated credential, account of a container).
    """

    subscription_id: str
    resource_group: str | None = None
    parent: str | None = None

    def child(self, parent: str) -> Scope:
        return replace(self, parent=parent)

    def __str__(self) -> str:
        parts = [self.subscription_id]
        if self.resource_group:
            parts.append(self.resource_group)
        if self.parent:
            parts.append(self.parent)
        return "/".join(parts)


# =============================================================================
# Attribute variants
# =============================================================================


class ResourceAttributes(BaseModel):
    """Base for kind-specific attributes."""

    model_config = {"extra": "ignore", "frozen": True}


class ResourceGroupAttributes(ResourceAttributes):
    location: str
    tags: dict[str, str] = Field(default_factory=dict)


class VNetAttributes(ResourceAttributes):
    location: str | None = None
    address_prefixes: list[str] = Field(default_factory=list)
    subnet_names: list[str] = Field(default_factory=list)


class SubnetAttributes(ResourceAttributes):
    address_prefix: str | None = None
    nsg_id: str | None = None
    delegations: list[str] = Field(default_factory=list)  # service names
    ip_configuration_ids: list[str] = Field(default_factory=list)
    private_endpoint_ids: list[str] = Field(default_factory=list)

    def has_delegation(self, service_name: str) -> bool:
        return any(d.lower() == service_name.lower() for d in self.delegations)


class SecurityRule(BaseModel):
    """A single inbound NSG rule."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    priority: Annotated[int, Field(ge=100, le=4096)]
    access: str = "Allow"
    direction: str = "Inbound"
    protocol: str = "Tcp"
    source_address_prefix: str = "*"
    destination_address_prefix: str = "*"
    destination_port_range: str = "*"
    source_port_range: str = "*"

    @field_validator("access")
    @classmethod
    def validate_access(cls, v: str) -> str:
        if v not in {"Allow", "Deny"}:
            raise ValueError("access must be Allow or Deny")
        return v


class NsgAttributes(ResourceAttributes):
    location: str | None = None
    rules: list[SecurityRule] = Field(default_factory=list)
    subnet_ids: list[str] = Field(default_factory=list)


class IdentityAttributes(ResourceAttributes):
    location: str | None = None
    client_id: str | None = None
    principal_id: str | None = None
    tenant_id: str | None = None


class FederatedCredentialAttributes(ResourceAttributes):
    issuer: str
    subject: str
    audiences: list[str] = Field(default_factory=list)


class RoleAssignmentAttributes(ResourceAttributes):
    role_definition_id: str
    principal_id: str
    scope: str
    principal_type: str = "ServicePrincipal"
    role_name: str | None = None


class StorageAccountAttributes(ResourceAttributes):
    location: str | None = None
    sku: str = "Standard_LRS"
    kind: str = "StorageV2"
    access_tier: str = "Hot"
    minimum_tls_version: str = "TLS1_2"
    https_only: bool = True
    allow_blob_public_access: bool = False
    provisioning_state: str | None = None
    versioning_enabled: bool = False


class StorageContainerAttributes(ResourceAttributes):
    public_access: str = "None"


class NicAttributes(ResourceAttributes):
    virtual_machine_id: str | None = None
    # Set on NICs managed by a private endpoint; they go away with it
    private_endpoint_id: str | None = None
    subnet_ids: list[str] = Field(default_factory=list)


class PrivateEndpointAttributes(ResourceAttributes):
    subnet_id: str | None = None


class ContainerEnvironmentAttributes(ResourceAttributes):
    infrastructure_subnet_id: str | None = None


class ContainerAppAttributes(ResourceAttributes):
    environment_id: str | None = None


ATTRIBUTE_TYPES: dict[ResourceKind, type[ResourceAttributes]] = {
    ResourceKind.RESOURCE_GROUP: ResourceGroupAttributes,
    ResourceKind.VNET: VNetAttributes,
    ResourceKind.SUBNET: SubnetAttributes,
    ResourceKind.NSG: NsgAttributes,
    ResourceKind.IDENTITY: IdentityAttributes,
    ResourceKind.FEDERATED_CREDENTIAL: FederatedCredentialAttributes,
    ResourceKind.ROLE_ASSIGNMENT: RoleAssignmentAttributes,
    ResourceKind.STORAGE_ACCOUNT: StorageAccountAttributes,
    ResourceKind.STORAGE_CONTAINER: StorageContainerAttributes,
    ResourceKind.NIC: NicAttributes,
    ResourceKind.PRIVATE_ENDPOINT: PrivateEndpointAttributes,
    ResourceKind.CONTAINER_ENVIRONMENT: ContainerEnvironmentAttributes,
    ResourceKind.CONTAINER_APP: ContainerAppAttributes,
}


# =============================================================================
# Descriptors
# =============================================================================


@dataclass(frozen=True)
class ResourceDescriptor:
    """A resource of a known kind, desired or observed.

    Name + kind + scope identify a descriptor uniquely within one run.
    ``id`` is the remote identifier and is only present once the resource
    exists.
    """

    kind: ResourceKind
    name: str
    scope: Scope
    attributes: ResourceAttributes | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name cannot be empty")
        if self.kind in CHILD_KINDS and not self.scope.parent:
            raise ValueError(f"{self.kind.value} '{self.name}' requires a parent in its scope")
        expected = ATTRIBUTE_TYPES[self.kind]
        if self.attributes is not None and not isinstance(self.attributes, expected):
            raise TypeError(
                f"{self.kind.value} attributes must be {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )

    @property
    def key(self) -> tuple[ResourceKind, str, Scope]:
        return (self.kind, self.name.lower(), self.scope)

    @property
    def label(self) -> str:
        if self.scope.parent:
            return f"{self.kind.value} '{self.scope.parent}/{self.name}'"
        return f"{self.kind.value} '{self.name}'"

    def with_attributes(self, **updates: Any) -> ResourceDescriptor:
        """Copy with attribute fields replaced (attributes are immutable)."""
        if self.attributes is None:
            attributes = ATTRIBUTE_TYPES[self.kind](**updates)
        else:
            attributes = self.attributes.model_copy(update=updates)
        return replace(self, attributes=attributes)


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` depends on ``target``; discovered at teardown time."""

    source: ResourceDescriptor
    target: ResourceDescriptor
    kind: DependencyKind
    # Set when the edge was found by name matching rather than by an exact id
    heuristic_note: str | None = None


@dataclass(frozen=True)
class FederatedCredentialPlan:
    """One trust subject for the GitHub OIDC issuer."""

    name: str
    subject: str
    issuer: str
    audience: str


@dataclass(frozen=True)
class RoleAssignmentPlan:
    role_name: str
    scope: str


@dataclass
class CredentialChain:
    """An identity with its federated credentials and role assignments.

    At most one federated credential per distinct subject.
    """

    identity: ResourceDescriptor
    federated_credentials: list[FederatedCredentialPlan] = field(default_factory=list)
    role_assignments: list[RoleAssignmentPlan] = field(default_factory=list)

    def __post_init__(self) -> None:
        subjects = [fc.subject for fc in self.federated_credentials]
        if len(subjects) != len(set(subjects)):
            raise ValueError("Federated credential subjects must be unique per identity")


def resource_name_from_id(resource_id: str, segment: str) -> str | None:
    """Return the name following ``segment`` in an ARM id (case-insensitive).

    ``/.../networkInterfaces/nic-1/ipConfigurations/ipconfig1`` with
    segment ``networkInterfaces`` gives ``nic-1``.
    """
    parts = resource_id.strip("/").split("/")
    for index, part in enumerate(parts[:-1]):
        if part.lower() == segment.lower():
            return parts[index + 1]
    return None


def resource_group_from_id(resource_id: str) -> str | None:
    return resource_name_from_id(resource_id, "resourceGroups")
