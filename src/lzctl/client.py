"""Cloud control-plane client.

``CloudControlPlaneClient`` is the only seam between orchestration logic and
Azure. Orchestrators and tests depend on the abstract interface; the
production adapter ``ArmControlPlaneClient`` wraps the Azure SDK for Python.

ERROR MODEL (normalized here, nowhere else):
- Absent resource: ``get`` returns None, ``delete`` returns quietly.
- Azure Policy denial: PolicyRestrictionError.
- Anything else (HTTP, auth, transport): ControlPlaneError.

Raw SDK objects and JSON bodies are decoded into typed ResourceDescriptors
before they leave this module.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import partial
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.msi import ManagedServiceIdentityClient
from azure.mgmt.msi.models import FederatedIdentityCredential, Identity
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import (
    AddressSpace,
    Delegation,
    NetworkSecurityGroup,
    Subnet,
    VirtualNetwork,
)
from azure.mgmt.network.models import SecurityRule as SdkSecurityRule
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import QueryRequest, QueryRequestOptions, ResultFormat
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import (
    BlobContainer,
    BlobServiceProperties,
    Sku,
    StorageAccountCreateParameters,
)
from pydantic import ValidationError

from .models import (
    ContainerAppAttributes,
    ContainerEnvironmentAttributes,
    FederatedCredentialAttributes,
    IdentityAttributes,
    NicAttributes,
    NsgAttributes,
    PrivateEndpointAttributes,
    ResourceDescriptor,
    ResourceGroupAttributes,
    ResourceKind,
    RoleAssignmentAttributes,
    Scope,
    SecurityRule,
    StorageAccountAttributes,
    StorageContainerAttributes,
    SubnetAttributes,
    VNetAttributes,
    resource_group_from_id,
    resource_name_from_id,
)

logger = logging.getLogger(__name__)

# Error codes ARM returns when Azure Policy blocks a request
POLICY_ERROR_CODES: frozenset[str] = frozenset({
    "RequestDisallowedByPolicy",
    "RequestDisallowedByAzure",
    "PolicyViolation",
})
ROLE_ASSIGNMENT_EXISTS_CODE = "RoleAssignmentExists"

CONTAINER_APPS_API_VERSION = "2024-03-01"
MAX_GRAPH_RESULTS = 1000

# ARM provider path per kind (resource group relative)
PROVIDER_PATHS: dict[ResourceKind, str] = {
    ResourceKind.VNET: "Microsoft.Network/virtualNetworks",
    ResourceKind.NSG: "Microsoft.Network/networkSecurityGroups",
    ResourceKind.NIC: "Microsoft.Network/networkInterfaces",
    ResourceKind.PRIVATE_ENDPOINT: "Microsoft.Network/privateEndpoints",
    ResourceKind.IDENTITY: "Microsoft.ManagedIdentity/userAssignedIdentities",
    ResourceKind.STORAGE_ACCOUNT: "Microsoft.Storage/storageAccounts",
    ResourceKind.CONTAINER_ENVIRONMENT: "Microsoft.App/managedEnvironments",
    ResourceKind.CONTAINER_APP: "Microsoft.App/containerApps",
}
CHILD_PATHS: dict[ResourceKind, str] = {
    ResourceKind.SUBNET: "subnets",
    ResourceKind.FEDERATED_CREDENTIAL: "federatedIdentityCredentials",
    ResourceKind.STORAGE_CONTAINER: "blobServices/default/containers",
}
PARENT_KINDS: dict[ResourceKind, ResourceKind] = {
    ResourceKind.SUBNET: ResourceKind.VNET,
    ResourceKind.FEDERATED_CREDENTIAL: ResourceKind.IDENTITY,
    ResourceKind.STORAGE_CONTAINER: ResourceKind.STORAGE_ACCOUNT,
}


class ControlPlaneError(Exception):
    """A control-plane call failed (transport, auth, or server side)."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class PolicyRestrictionError(ControlPlaneError):
    """The request was denied by Azure Policy; needs manual remediation."""

    pass


class ResourceMissingError(ControlPlaneError):
    """The addressed resource (or its parent) does not exist."""

    pass


class UnsupportedOperationError(ControlPlaneError):
    """The verb is not supported for the resource kind."""

    pass


def build_resource_id(kind: ResourceKind, name: str, scope: Scope) -> str:
    """Build the ARM id of a resource from its kind, name and scope."""
    subscription = f"/subscriptions/{scope.subscription_id}"
    if kind == ResourceKind.RESOURCE_GROUP:
        return f"{subscription}/resourceGroups/{name}"
    if kind == ResourceKind.ROLE_ASSIGNMENT:
        return f"{subscription}/providers/Microsoft.Authorization/roleAssignments/{name}"

    group = f"{subscription}/resourceGroups/{scope.resource_group}/providers"
    if kind in CHILD_PATHS:
        parent_kind = PARENT_KINDS[kind]
        return (
            f"{group}/{PROVIDER_PATHS[parent_kind]}/{scope.parent}"
            f"/{CHILD_PATHS[kind]}/{name}"
        )
    return f"{group}/{PROVIDER_PATHS[kind]}/{name}"


def role_definition_resource_id(subscription_id: str, role_definition_guid: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/providers/"
        f"Microsoft.Authorization/roleDefinitions/{role_definition_guid}"
    )


class CloudControlPlaneClient(ABC):
    """Get / create / update / delete / list per resource kind.

    Implementations return typed descriptors, None for "not found", or raise
    ControlPlaneError. Every other behavior must be normalized to one of
    those three outcomes.
    """

    @abstractmethod
    def get(self, kind: ResourceKind, name: str, scope: Scope) -> ResourceDescriptor | None:
        """Fetch a resource, or None if it does not exist."""

    @abstractmethod
    def create(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        """Create a resource from its desired descriptor."""

    @abstractmethod
    def update(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        """Patch an existing resource in place to match ``desired``."""

    @abstractmethod
    def delete(self, kind: ResourceKind, name: str, scope: Scope) -> None:
        """Delete a resource. Deleting an absent resource is not an error."""

    @abstractmethod
    def list(self, kind: ResourceKind, scope: Scope) -> list[ResourceDescriptor]:
        """List resources of a kind in a scope (resource group or parent)."""

    @abstractmethod
    def list_role_assignments(self, scope: str, principal_id: str) -> list[ResourceDescriptor]:
        """List role assignments of a principal that apply at an ARM scope."""

    @abstractmethod
    def find_role_definition(self, role_name: str, scope: str) -> str | None:
        """Resolve a role display name to its definition GUID."""


# =============================================================================
# Azure SDK adapter
# =============================================================================


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


@contextmanager
def _normalized_errors(operation: str) -> Iterator[None]:
    """Translate Azure SDK exceptions into the control-plane error model."""
    try:
        yield
    except ResourceNotFoundError as e:
        raise ResourceMissingError(f"{operation}: not found", status_code=404) from e
    except HttpResponseError as e:
        code = e.error.code if e.error else None
        if e.status_code == 404:
            raise ResourceMissingError(
                f"{operation}: not found", code=code, status_code=404
            ) from e
        if code in POLICY_ERROR_CODES:
            raise PolicyRestrictionError(
                f"{operation}: blocked by policy: {e.message}",
                code=code,
                status_code=e.status_code,
            ) from e
        logger.debug(
            "Azure API error",
            extra={"operation": operation, "status_code": e.status_code, "error_code": code},
        )
        raise ControlPlaneError(
            f"{operation}: Azure API error ({e.status_code}): {e.message}",
            code=code,
            status_code=e.status_code,
        ) from e
    except AzureError as e:
        raise ControlPlaneError(f"{operation}: Azure error: {e}") from e
    except ValidationError as e:
        raise ControlPlaneError(
            f"{operation}: unexpected response body: {e.error_count()} invalid field(s)"
        ) from e


def _decode_rule(rule: Any) -> SecurityRule:
    return SecurityRule(
        name=rule.name,
        priority=rule.priority,
        access=_enum_value(rule.access),
        direction=_enum_value(rule.direction),
        protocol=_enum_value(rule.protocol),
        source_address_prefix=rule.source_address_prefix or "*",
        destination_address_prefix=rule.destination_address_prefix or "*",
        destination_port_range=rule.destination_port_range or "*",
        source_port_range=rule.source_port_range or "*",
    )


class ArmControlPlaneClient(CloudControlPlaneClient):
    """Control-plane client backed by the Azure management SDKs.

    Long-running operations are awaited through their pollers, except
    storage account creation, whose provisioning state is polled by the
    caller through the propagation waiter.
    """

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._resources = ResourceManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._network = NetworkManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._msi = ManagedServiceIdentityClient(
            credential=credential, subscription_id=subscription_id
        )
        self._authorization = AuthorizationManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._storage = StorageManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._graph = ResourceGraphClient(credential=credential)

        self._getters: dict[ResourceKind, Callable[[str, Scope], ResourceDescriptor]] = {
            ResourceKind.RESOURCE_GROUP: self._get_resource_group,
            ResourceKind.VNET: self._get_vnet,
            ResourceKind.SUBNET: self._get_subnet,
            ResourceKind.NSG: self._get_nsg,
            ResourceKind.NIC: self._get_nic,
            ResourceKind.PRIVATE_ENDPOINT: self._get_private_endpoint,
            ResourceKind.IDENTITY: self._get_identity,
            ResourceKind.FEDERATED_CREDENTIAL: self._get_federated_credential,
            ResourceKind.STORAGE_ACCOUNT: self._get_storage_account,
            ResourceKind.STORAGE_CONTAINER: self._get_storage_container,
            ResourceKind.CONTAINER_ENVIRONMENT: partial(
                self._get_container_resource, ResourceKind.CONTAINER_ENVIRONMENT
            ),
            ResourceKind.CONTAINER_APP: partial(
                self._get_container_resource, ResourceKind.CONTAINER_APP
            ),
        }

    # -------------------------------------------------------------------------
    # Interface
    # -------------------------------------------------------------------------

    def get(self, kind: ResourceKind, name: str, scope: Scope) -> ResourceDescriptor | None:
        getter = self._getters.get(kind)
        if getter is None:
            raise UnsupportedOperationError(f"get is not supported for {kind.value}")
        try:
            with _normalized_errors(f"get {kind.value} '{name}'"):
                return getter(name, scope)
        except ResourceMissingError:
            return None

    def create(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        operation = f"create {desired.label}"
        with _normalized_errors(operation):
            created = self._create(desired)
        logger.debug("Control plane create returned", extra={"resource_id": created.id})
        return created

    def update(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        with _normalized_errors(f"update {desired.label}"):
            return self._update(desired)

    def delete(self, kind: ResourceKind, name: str, scope: Scope) -> None:
        try:
            with _normalized_errors(f"delete {kind.value} '{name}'"):
                self._delete(kind, name, scope)
        except ResourceMissingError:
            logger.debug(f"{kind.value} '{name}' already absent")

    def list(self, kind: ResourceKind, scope: Scope) -> list[ResourceDescriptor]:
        with _normalized_errors(f"list {kind.value} in {scope}"):
            if kind == ResourceKind.FEDERATED_CREDENTIAL:
                items = self._msi.federated_identity_credentials.list(
                    resource_group_name=scope.resource_group,
                    resource_name=scope.parent,
                )
                return [self._decode_federated_credential(fc, scope) for fc in items]
            if kind in (ResourceKind.CONTAINER_ENVIRONMENT, ResourceKind.CONTAINER_APP):
                return self._query_container_resources(kind, scope)
        raise UnsupportedOperationError(f"list is not supported for {kind.value}")

    def list_role_assignments(self, scope: str, principal_id: str) -> list[ResourceDescriptor]:
        with _normalized_errors(f"list role assignments at {scope}"):
            assignments = self._authorization.role_assignments.list_for_scope(
                scope=scope, filter=f"principalId eq '{principal_id}'"
            )
            return [
                ResourceDescriptor(
                    kind=ResourceKind.ROLE_ASSIGNMENT,
                    name=ra.name,
                    scope=Scope(self._subscription_id),
                    id=ra.id,
                    attributes=RoleAssignmentAttributes(
                        role_definition_id=ra.role_definition_id,
                        principal_id=ra.principal_id,
                        scope=ra.scope,
                        principal_type=_enum_value(ra.principal_type) or "ServicePrincipal",
                    ),
                )
                for ra in assignments
            ]

    def find_role_definition(self, role_name: str, scope: str) -> str | None:
        escaped = role_name.replace("'", "''")
        with _normalized_errors(f"find role definition '{role_name}'"):
            for definition in self._authorization.role_definitions.list(
                scope=scope, filter=f"roleName eq '{escaped}'"
            ):
                return definition.name
        return None

    # -------------------------------------------------------------------------
    # Decoders (SDK model -> descriptor)
    # -------------------------------------------------------------------------

    def _get_resource_group(self, name: str, scope: Scope) -> ResourceDescriptor:
        rg = self._resources.resource_groups.get(resource_group_name=name)
        return ResourceDescriptor(
            kind=ResourceKind.RESOURCE_GROUP,
            name=rg.name,
            scope=Scope(scope.subscription_id),
            id=rg.id,
            attributes=ResourceGroupAttributes(location=rg.location, tags=rg.tags or {}),
        )

    def _get_vnet(self, name: str, scope: Scope) -> ResourceDescriptor:
        vnet = self._network.virtual_networks.get(scope.resource_group, name)
        prefixes = vnet.address_space.address_prefixes if vnet.address_space else []
        return ResourceDescriptor(
            kind=ResourceKind.VNET,
            name=vnet.name,
            scope=scope,
            id=vnet.id,
            attributes=VNetAttributes(
                location=vnet.location,
                address_prefixes=list(prefixes or []),
                subnet_names=[s.name for s in vnet.subnets or []],
            ),
        )

    def _get_subnet(self, name: str, scope: Scope) -> ResourceDescriptor:
        subnet = self._network.subnets.get(scope.resource_group, scope.parent, name)
        return self._decode_subnet(subnet, scope)

    @staticmethod
    def _decode_subnet(subnet: Any, scope: Scope) -> ResourceDescriptor:
        prefix = subnet.address_prefix
        if not prefix and subnet.address_prefixes:
            prefix = subnet.address_prefixes[0]
        return ResourceDescriptor(
            kind=ResourceKind.SUBNET,
            name=subnet.name,
            scope=scope,
            id=subnet.id,
            attributes=SubnetAttributes(
                address_prefix=prefix,
                nsg_id=subnet.network_security_group.id if subnet.network_security_group else None,
                delegations=[d.service_name for d in subnet.delegations or []],
                ip_configuration_ids=[c.id for c in subnet.ip_configurations or []],
                private_endpoint_ids=[p.id for p in subnet.private_endpoints or []],
            ),
        )

    def _get_nsg(self, name: str, scope: Scope) -> ResourceDescriptor:
        nsg = self._network.network_security_groups.get(scope.resource_group, name)
        return ResourceDescriptor(
            kind=ResourceKind.NSG,
            name=nsg.name,
            scope=scope,
            id=nsg.id,
            attributes=NsgAttributes(
                location=nsg.location,
                rules=[_decode_rule(r) for r in nsg.security_rules or []],
                subnet_ids=[s.id for s in nsg.subnets or []],
            ),
        )

    def _get_nic(self, name: str, scope: Scope) -> ResourceDescriptor:
        nic = self._network.network_interfaces.get(scope.resource_group, name)
        return ResourceDescriptor(
            kind=ResourceKind.NIC,
            name=nic.name,
            scope=scope,
            id=nic.id,
            attributes=NicAttributes(
                virtual_machine_id=nic.virtual_machine.id if nic.virtual_machine else None,
                private_endpoint_id=nic.private_endpoint.id if nic.private_endpoint else None,
                subnet_ids=[
                    c.subnet.id for c in nic.ip_configurations or [] if c.subnet is not None
                ],
            ),
        )

    def _get_private_endpoint(self, name: str, scope: Scope) -> ResourceDescriptor:
        endpoint = self._network.private_endpoints.get(scope.resource_group, name)
        return ResourceDescriptor(
            kind=ResourceKind.PRIVATE_ENDPOINT,
            name=endpoint.name,
            scope=scope,
            id=endpoint.id,
            attributes=PrivateEndpointAttributes(
                subnet_id=endpoint.subnet.id if endpoint.subnet else None
            ),
        )

    def _get_identity(self, name: str, scope: Scope) -> ResourceDescriptor:
        identity = self._msi.user_assigned_identities.get(
            resource_group_name=scope.resource_group, resource_name=name
        )
        return ResourceDescriptor(
            kind=ResourceKind.IDENTITY,
            name=identity.name,
            scope=scope,
            id=identity.id,
            attributes=IdentityAttributes(
                location=identity.location,
                client_id=identity.client_id,
                principal_id=identity.principal_id,
                tenant_id=identity.tenant_id,
            ),
        )

    def _get_federated_credential(self, name: str, scope: Scope) -> ResourceDescriptor:
        credential = self._msi.federated_identity_credentials.get(
            resource_group_name=scope.resource_group,
            resource_name=scope.parent,
            federated_identity_credential_resource_name=name,
        )
        return self._decode_federated_credential(credential, scope)

    @staticmethod
    def _decode_federated_credential(credential: Any, scope: Scope) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=ResourceKind.FEDERATED_CREDENTIAL,
            name=credential.name,
            scope=scope,
            id=credential.id,
            attributes=FederatedCredentialAttributes(
                issuer=credential.issuer,
                subject=credential.subject,
                audiences=list(credential.audiences or []),
            ),
        )

    def _get_storage_account(self, name: str, scope: Scope) -> ResourceDescriptor:
        account = self._storage.storage_accounts.get_properties(scope.resource_group, name)
        versioning = False
        state = _enum_value(account.provisioning_state)
        if state == "Succeeded":
            service = self._storage.blob_services.get_service_properties(
                scope.resource_group, name
            )
            versioning = bool(service.is_versioning_enabled)
        return ResourceDescriptor(
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=account.name,
            scope=scope,
            id=account.id,
            attributes=StorageAccountAttributes(
                location=account.location,
                sku=_enum_value(account.sku.name) if account.sku else "Standard_LRS",
                kind=_enum_value(account.kind) or "StorageV2",
                access_tier=_enum_value(account.access_tier) or "Hot",
                minimum_tls_version=_enum_value(account.minimum_tls_version) or "TLS1_2",
                https_only=bool(account.enable_https_traffic_only),
                allow_blob_public_access=bool(account.allow_blob_public_access),
                provisioning_state=state,
                versioning_enabled=versioning,
            ),
        )

    def _get_storage_container(self, name: str, scope: Scope) -> ResourceDescriptor:
        container = self._storage.blob_containers.get(scope.resource_group, scope.parent, name)
        return ResourceDescriptor(
            kind=ResourceKind.STORAGE_CONTAINER,
            name=container.name,
            scope=scope,
            id=container.id,
            attributes=StorageContainerAttributes(
                public_access=_enum_value(container.public_access) or "None"
            ),
        )

    def _get_container_resource(
        self, kind: ResourceKind, name: str, scope: Scope
    ) -> ResourceDescriptor:
        resource = self._resources.resources.get_by_id(
            resource_id=build_resource_id(kind, name, scope),
            api_version=CONTAINER_APPS_API_VERSION,
        )
        return self._decode_container_resource(
            kind, {"id": resource.id, "name": resource.name, "properties": resource.properties}
        )

    def _decode_container_resource(
        self, kind: ResourceKind, row: dict[str, Any]
    ) -> ResourceDescriptor:
        properties = row.get("properties") or {}
        resource_id = row["id"]
        scope = Scope(self._subscription_id, resource_group_from_id(resource_id))
        if kind == ResourceKind.CONTAINER_ENVIRONMENT:
            vnet_config = properties.get("vnetConfiguration") or {}
            attributes: Any = ContainerEnvironmentAttributes(
                infrastructure_subnet_id=vnet_config.get("infrastructureSubnetId")
            )
        else:
            attributes = ContainerAppAttributes(
                environment_id=properties.get("managedEnvironmentId")
                or properties.get("environmentId")
            )
        return ResourceDescriptor(
            kind=kind, name=row["name"], scope=scope, id=resource_id, attributes=attributes
        )

    def _query_container_resources(
        self, kind: ResourceKind, scope: Scope
    ) -> list[ResourceDescriptor]:
        """Find container environments/apps via Resource Graph.

        The subnet a container environment is injected into is only visible
        on the environment itself, so teardown has to search outward. An
        absent resource group in ``scope`` searches the whole subscription.
        """
        resource_type = PROVIDER_PATHS[kind].lower()
        query = f"resources | where type =~ '{resource_type}'"
        if scope.resource_group:
            query += f" | where resourceGroup =~ '{scope.resource_group}'"
        query += " | project id, name, properties"

        response = self._graph.resources(
            QueryRequest(
                subscriptions=[scope.subscription_id],
                query=query,
                options=QueryRequestOptions(
                    result_format=ResultFormat.OBJECT_ARRAY,
                    top=MAX_GRAPH_RESULTS,
                ),
            )
        )
        rows = response.data if isinstance(response.data, list) else []
        return [self._decode_container_resource(kind, row) for row in rows]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _create(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        kind, name, scope, attrs = desired.kind, desired.name, desired.scope, desired.attributes
        rg = scope.resource_group

        if kind == ResourceKind.RESOURCE_GROUP:
            assert isinstance(attrs, ResourceGroupAttributes)
            self._resources.resource_groups.create_or_update(
                resource_group_name=name,
                parameters=ResourceGroup(location=attrs.location, tags=attrs.tags),
            )
        elif kind == ResourceKind.VNET:
            assert isinstance(attrs, VNetAttributes)
            self._network.virtual_networks.begin_create_or_update(
                rg,
                name,
                VirtualNetwork(
                    location=attrs.location,
                    address_space=AddressSpace(address_prefixes=attrs.address_prefixes),
                ),
            ).result()
        elif kind == ResourceKind.NSG:
            assert isinstance(attrs, NsgAttributes)
            self._network.network_security_groups.begin_create_or_update(
                rg,
                name,
                NetworkSecurityGroup(
                    location=attrs.location,
                    security_rules=[self._encode_rule(r) for r in attrs.rules],
                ),
            ).result()
        elif kind == ResourceKind.SUBNET:
            assert isinstance(attrs, SubnetAttributes)
            subnet = Subnet(
                address_prefix=attrs.address_prefix,
                network_security_group=NetworkSecurityGroup(id=attrs.nsg_id)
                if attrs.nsg_id
                else None,
                delegations=[
                    Delegation(name=f"delegation-{i}", service_name=service)
                    for i, service in enumerate(attrs.delegations)
                ],
            )
            self._network.subnets.begin_create_or_update(rg, scope.parent, name, subnet).result()
        elif kind == ResourceKind.IDENTITY:
            assert isinstance(attrs, IdentityAttributes)
            self._msi.user_assigned_identities.create_or_update(
                resource_group_name=rg,
                resource_name=name,
                parameters=Identity(location=attrs.location),
            )
        elif kind == ResourceKind.FEDERATED_CREDENTIAL:
            self._put_federated_credential(desired)
        elif kind == ResourceKind.ROLE_ASSIGNMENT:
            assert isinstance(attrs, RoleAssignmentAttributes)
            assignment = self._authorization.role_assignments.create(
                scope=attrs.scope,
                role_assignment_name=name,
                parameters=RoleAssignmentCreateParameters(
                    role_definition_id=attrs.role_definition_id,
                    principal_id=attrs.principal_id,
                    principal_type=attrs.principal_type,
                ),
            )
            return ResourceDescriptor(
                kind=kind, name=name, scope=scope, id=assignment.id, attributes=attrs
            )
        elif kind == ResourceKind.STORAGE_ACCOUNT:
            assert isinstance(attrs, StorageAccountAttributes)
            # Not awaited: the caller polls provisioning_state through the waiter
            self._storage.storage_accounts.begin_create(
                rg,
                name,
                StorageAccountCreateParameters(
                    sku=Sku(name=attrs.sku),
                    kind=attrs.kind,
                    location=attrs.location,
                    access_tier=attrs.access_tier,
                    minimum_tls_version=attrs.minimum_tls_version,
                    enable_https_traffic_only=attrs.https_only,
                    allow_blob_public_access=attrs.allow_blob_public_access,
                ),
            )
            return ResourceDescriptor(
                kind=kind,
                name=name,
                scope=scope,
                id=build_resource_id(kind, name, scope),
                attributes=attrs.model_copy(update={"provisioning_state": "Creating"}),
            )
        elif kind == ResourceKind.STORAGE_CONTAINER:
            assert isinstance(attrs, StorageContainerAttributes)
            self._storage.blob_containers.create(
                rg, scope.parent, name, BlobContainer(public_access=attrs.public_access)
            )
        else:
            raise UnsupportedOperationError(f"create is not supported for {kind.value}")

        created = self.get(kind, name, scope)
        if created is None:
            raise ControlPlaneError(f"{desired.label} was not readable after creation")
        return created

    def _update(self, desired: ResourceDescriptor) -> ResourceDescriptor:
        kind, name, scope, attrs = desired.kind, desired.name, desired.scope, desired.attributes
        rg = scope.resource_group

        if kind == ResourceKind.SUBNET:
            assert isinstance(attrs, SubnetAttributes)
            # Read-modify-write keeps IP configurations and endpoints intact
            current = self._network.subnets.get(rg, scope.parent, name)
            if attrs.nsg_id:
                current.network_security_group = NetworkSecurityGroup(id=attrs.nsg_id)
            existing = {d.service_name.lower() for d in current.delegations or []}
            delegations = list(current.delegations or [])
            for service in attrs.delegations:
                if service.lower() not in existing:
                    delegations.append(
                        Delegation(name=f"delegation-{len(delegations)}", service_name=service)
                    )
            current.delegations = delegations
            result = self._network.subnets.begin_create_or_update(
                rg, scope.parent, name, current
            ).result()
            return self._decode_subnet(result, scope)
        if kind == ResourceKind.FEDERATED_CREDENTIAL:
            self._put_federated_credential(desired)
        elif kind == ResourceKind.STORAGE_ACCOUNT:
            assert isinstance(attrs, StorageAccountAttributes)
            self._storage.blob_services.set_service_properties(
                rg, name, BlobServiceProperties(is_versioning_enabled=attrs.versioning_enabled)
            )
        else:
            raise UnsupportedOperationError(f"update is not supported for {kind.value}")

        updated = self.get(kind, name, scope)
        if updated is None:
            raise ControlPlaneError(f"{desired.label} disappeared during update")
        return updated

    def _put_federated_credential(self, desired: ResourceDescriptor) -> None:
        attrs = desired.attributes
        assert isinstance(attrs, FederatedCredentialAttributes)
        self._msi.federated_identity_credentials.create_or_update(
            resource_group_name=desired.scope.resource_group,
            resource_name=desired.scope.parent,
            federated_identity_credential_resource_name=desired.name,
            parameters=FederatedIdentityCredential(
                issuer=attrs.issuer, subject=attrs.subject, audiences=attrs.audiences
            ),
        )

    def _delete(self, kind: ResourceKind, name: str, scope: Scope) -> None:
        rg = scope.resource_group
        if kind == ResourceKind.RESOURCE_GROUP:
            self._resources.resource_groups.begin_delete(resource_group_name=name).result()
        elif kind == ResourceKind.VNET:
            self._network.virtual_networks.begin_delete(rg, name).result()
        elif kind == ResourceKind.SUBNET:
            self._network.subnets.begin_delete(rg, scope.parent, name).result()
        elif kind == ResourceKind.NSG:
            self._network.network_security_groups.begin_delete(rg, name).result()
        elif kind == ResourceKind.NIC:
            self._network.network_interfaces.begin_delete(rg, name).result()
        elif kind == ResourceKind.PRIVATE_ENDPOINT:
            self._network.private_endpoints.begin_delete(rg, name).result()
        elif kind == ResourceKind.IDENTITY:
            self._msi.user_assigned_identities.delete(resource_group_name=rg, resource_name=name)
        elif kind == ResourceKind.FEDERATED_CREDENTIAL:
            self._msi.federated_identity_credentials.delete(
                resource_group_name=rg,
                resource_name=scope.parent,
                federated_identity_credential_resource_name=name,
            )
        elif kind == ResourceKind.STORAGE_ACCOUNT:
            self._storage.storage_accounts.delete(rg, name)
        elif kind == ResourceKind.STORAGE_CONTAINER:
            self._storage.blob_containers.delete(rg, scope.parent, name)
        elif kind in (ResourceKind.CONTAINER_ENVIRONMENT, ResourceKind.CONTAINER_APP):
            self._resources.resources.begin_delete_by_id(
                resource_id=build_resource_id(kind, name, scope),
                api_version=CONTAINER_APPS_API_VERSION,
            ).result()
        else:
            raise UnsupportedOperationError(f"delete is not supported for {kind.value}")

    @staticmethod
    def _encode_rule(rule: SecurityRule) -> SdkSecurityRule:
        return SdkSecurityRule(
            name=rule.name,
            priority=rule.priority,
            access=rule.access,
            direction=rule.direction,
            protocol=rule.protocol,
            source_address_prefix=rule.source_address_prefix,
            destination_address_prefix=rule.destination_address_prefix,
            source_port_range=rule.source_port_range,
            destination_port_range=rule.destination_port_range,
        )


def nic_name_from_ip_configuration(ip_configuration_id: str) -> str | None:
    """NIC name from ``.../networkInterfaces/<nic>/ipConfigurations/<cfg>``."""
    return resource_name_from_id(ip_configuration_id, "networkInterfaces")
