"""Dependency discovery for teardown.

Nothing declares what depends on a subnet; it has to be discovered from live
state before the subnet can be deleted:

- NICs, through the subnet's IP configuration ids.
- Private endpoints, through the subnet's private endpoint ids.
- Container App environments, whose infrastructure subnet id mentions the
  subnet name. This one is a name match, not an id match, so matches that are
  not an exact ``/subnets/<name>`` suffix are reported as warnings.
"""

from __future__ import annotations

import logging

from .client import CloudControlPlaneClient, nic_name_from_ip_configuration
from .models import (
    ContainerEnvironmentAttributes,
    DependencyEdge,
    DependencyKind,
    NicAttributes,
    ResourceDescriptor,
    ResourceKind,
    Scope,
    SubnetAttributes,
    resource_group_from_id,
    resource_name_from_id,
)
from .report import ExecutionReporter

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Finds the resources that must go before a target can be deleted.

    Raises ControlPlaneError from the client when discovery itself fails;
    callers must not delete a target whose dependents are unknown.
    """

    def __init__(
        self,
        client: CloudControlPlaneClient,
        reporter: ExecutionReporter | None = None,
    ) -> None:
        self._client = client
        self._reporter = reporter

    def dependents_of(self, target: ResourceDescriptor) -> list[DependencyEdge]:
        if target.kind != ResourceKind.SUBNET:
            return []

        subnet = target
        if not isinstance(subnet.attributes, SubnetAttributes):
            live = self._client.get(target.kind, target.name, target.scope)
            if live is None:
                return []
            subnet = live
        attrs = subnet.attributes
        assert isinstance(attrs, SubnetAttributes)

        edges: list[DependencyEdge] = []
        edges += self._private_endpoints(subnet, attrs)
        edges += self._nics(subnet, attrs)
        edges += self._container_environments(subnet)

        logger.info(
            f"{subnet.label} has {len(edges)} dependent(s)",
            extra={"dependents": [e.source.label for e in edges]},
        )
        return edges

    def _scope_for(self, resource_id: str, fallback: Scope) -> Scope:
        resource_group = resource_group_from_id(resource_id) or fallback.resource_group
        return Scope(fallback.subscription_id, resource_group)

    def _nics(self, subnet: ResourceDescriptor, attrs: SubnetAttributes) -> list[DependencyEdge]:
        edges: list[DependencyEdge] = []
        seen: set[str] = set()
        for ip_configuration_id in attrs.ip_configuration_ids:
            nic_name = nic_name_from_ip_configuration(ip_configuration_id)
            if nic_name is None:
                self._warn(
                    f"IP configuration {ip_configuration_id} on {subnet.label} does not "
                    f"belong to a network interface; remove it manually"
                )
                continue
            if nic_name.lower() in seen:
                continue
            seen.add(nic_name.lower())

            nic = self._client.get(
                ResourceKind.NIC, nic_name, self._scope_for(ip_configuration_id, subnet.scope)
            )
            if nic is None:
                continue
            nic_attrs = nic.attributes
            if isinstance(nic_attrs, NicAttributes) and nic_attrs.private_endpoint_id:
                # Managed by a private endpoint, deleted along with it
                continue
            edges.append(DependencyEdge(source=nic, target=subnet, kind=DependencyKind.ATTACHED_NIC))
        return edges

    def _private_endpoints(
        self, subnet: ResourceDescriptor, attrs: SubnetAttributes
    ) -> list[DependencyEdge]:
        edges: list[DependencyEdge] = []
        for endpoint_id in attrs.private_endpoint_ids:
            name = resource_name_from_id(endpoint_id, "privateEndpoints")
            if name is None:
                continue
            endpoint = self._client.get(
                ResourceKind.PRIVATE_ENDPOINT, name, self._scope_for(endpoint_id, subnet.scope)
            )
            if endpoint is not None:
                edges.append(
                    DependencyEdge(
                        source=endpoint, target=subnet, kind=DependencyKind.PRIVATE_ENDPOINT_LINK
                    )
                )
        return edges

    def _container_environments(self, subnet: ResourceDescriptor) -> list[DependencyEdge]:
        environments = self._client.list(
            ResourceKind.CONTAINER_ENVIRONMENT, Scope(subnet.scope.subscription_id)
        )
        name = subnet.name.lower()
        exact_suffix = f"/subnets/{name}"

        edges: list[DependencyEdge] = []
        for environment in environments:
            attrs = environment.attributes
            if not isinstance(attrs, ContainerEnvironmentAttributes):
                continue
            infrastructure_subnet = (attrs.infrastructure_subnet_id or "").lower()
            if name not in infrastructure_subnet:
                continue

            note = None
            if not infrastructure_subnet.endswith(exact_suffix):
                note = (
                    f"Container environment '{environment.name}' matched {subnet.label} by name "
                    f"only: its infrastructure subnet is {attrs.infrastructure_subnet_id}"
                )
                self._warn(note)
            edges.append(
                DependencyEdge(
                    source=environment,
                    target=subnet,
                    kind=DependencyKind.DELEGATED_ENVIRONMENT,
                    heuristic_note=note,
                )
            )
        return edges

    def _warn(self, message: str) -> None:
        if self._reporter is not None:
            self._reporter.warn(message)
        else:
            logger.warning(message)
