"""Landing zone network topology planning.

Subnet CIDRs are derived from the VNet address space with fixed offsets per
role so nobody hand-assigns ranges per environment. For a /24:

    app               10.0.0.0/25     (first half)
    privateendpoints  10.0.0.128/27
    web               10.0.0.160/28
    data              10.0.0.176/28

The same fractions apply to any prefix length between /8 and /25. Every
computed block is disjoint from the others and contained in the VNet.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from fractions import Fraction

from .config import RunConfig
from .models import NsgAttributes, SecurityRule

FRONT_DOOR_SERVICE_TAG = "AzureFrontDoor.Backend"
DENY_VNET_INBOUND_PRIORITY = 4000

APP_SERVICE_DELEGATION = "Microsoft.Web/serverFarms"
POSTGRES_DELEGATION = "Microsoft.DBforPostgreSQL/flexibleServers"
CONTAINER_APPS_DELEGATION = "Microsoft.App/environments"


@dataclass(frozen=True)
class SubnetRole:
    """Fixed partition slot for a subnet role.

    Attributes:
        name: Role name (also the subnet base name).
        extra_bits: Prefix length added to the VNet prefix.
        offset: Start of the block as a fraction of the VNet size.
        delegation: Default service delegation, if any.
    """

    name: str
    extra_bits: int
    offset: Fraction
    delegation: str | None = None


SUBNET_ROLES: dict[str, SubnetRole] = {
    "app": SubnetRole("app", 1, Fraction(0), APP_SERVICE_DELEGATION),
    "privateendpoints": SubnetRole("privateendpoints", 3, Fraction(1, 2)),
    "web": SubnetRole("web", 4, Fraction(1, 2) + Fraction(1, 8)),
    "data": SubnetRole(
        "data", 4, Fraction(1, 2) + Fraction(1, 8) + Fraction(1, 16), POSTGRES_DELEGATION
    ),
}


class TopologyError(Exception):
    """Raised when a topology cannot be planned for the given address space."""

    pass


def compute_subnet_cidr(address_space: str, role: str) -> str:
    """Compute the CIDR of ``role`` inside ``address_space``.

    Raises:
        TopologyError: If the role is unknown or the block does not fit.
    """
    try:
        slot = SUBNET_ROLES[role]
    except KeyError as e:
        raise TopologyError(f"Unknown subnet role '{role}'") from e

    vnet = ipaddress.IPv4Network(address_space, strict=True)
    new_prefix = vnet.prefixlen + slot.extra_bits
    if new_prefix > 29:
        raise TopologyError(
            f"VNet {address_space} is too small for role '{role}' (would need /{new_prefix})"
        )

    start_offset = slot.offset * vnet.num_addresses
    if start_offset.denominator != 1:
        raise TopologyError(f"Role '{role}' offset does not align inside {address_space}")

    start = int(vnet.network_address) + int(start_offset)
    subnet = ipaddress.IPv4Network((start, new_prefix), strict=True)
    if not subnet.subnet_of(vnet):
        raise TopologyError(f"Computed {subnet} for role '{role}' falls outside {address_space}")
    return str(subnet)


def subnet_name(prefix: str, role: str) -> str:
    return f"{prefix}-{role}-subnet"


def nsg_name(prefix: str, subnet_base_name: str) -> str:
    return f"{prefix}-{subnet_base_name}-nsg"


def subnet_base_name(prefix: str, subnet: str) -> str:
    """Invert :func:`subnet_name`; names off the convention pass through unchanged."""
    base = subnet
    if base.startswith(f"{prefix}-"):
        base = base[len(prefix) + 1 :]
    if base.endswith("-subnet"):
        base = base[: -len("-subnet")]
    return base or subnet


def _allow(name: str, priority: int, source: str, port: str) -> SecurityRule:
    return SecurityRule(
        name=name,
        priority=priority,
        source_address_prefix=source,
        destination_port_range=port,
    )


def _deny_vnet_inbound() -> SecurityRule:
    return SecurityRule(
        name="deny-vnet-inbound",
        priority=DENY_VNET_INBOUND_PRIORITY,
        access="Deny",
        protocol="*",
        source_address_prefix="VirtualNetwork",
        destination_address_prefix="VirtualNetwork",
    )


def nsg_rules_for_role(role: str, cidrs: dict[str, str]) -> list[SecurityRule]:
    """Minimum inbound rules for a role, given the CIDRs of its peers.

    Rules that reference a peer role absent from ``cidrs`` are omitted.
    """
    rules: list[SecurityRule] = []
    app = cidrs.get("app")
    web = cidrs.get("web")

    if role == "web":
        rules.append(_allow("allow-frontdoor-https", 100, FRONT_DOOR_SERVICE_TAG, "443"))
        rules.append(_allow("allow-frontdoor-http", 110, FRONT_DOOR_SERVICE_TAG, "80"))
    elif role == "app":
        if web:
            rules.append(_allow("allow-web-https", 100, web, "443"))
        rules.append(_allow("allow-frontdoor-https", 110, FRONT_DOOR_SERVICE_TAG, "443"))
    elif role == "data":
        if app:
            rules.append(_allow("allow-app-postgres", 100, app, "5432"))
    elif role == "privateendpoints":
        if app:
            rules.append(_allow("allow-app-https", 100, app, "443"))
            rules.append(_allow("allow-app-postgres", 110, app, "5432"))
    else:
        raise TopologyError(f"Unknown subnet role '{role}'")

    rules.append(_deny_vnet_inbound())
    return rules


@dataclass(frozen=True)
class SubnetPlan:
    role: str
    name: str
    cidr: str
    nsg_name: str
    nsg_rules: tuple[SecurityRule, ...]
    delegation: str | None = None


@dataclass(frozen=True)
class NetworkTopology:
    """One VNet and the subnets carved out of it."""

    vnet_name: str
    address_space: str
    subnets: tuple[SubnetPlan, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        vnet = ipaddress.IPv4Network(self.address_space, strict=True)
        networks = [ipaddress.IPv4Network(s.cidr) for s in self.subnets]
        for net in networks:
            if not net.subnet_of(vnet):
                raise TopologyError(f"Subnet {net} is outside VNet {vnet}")
        for i, a in enumerate(networks):
            for b in networks[i + 1 :]:
                if a.overlaps(b):
                    raise TopologyError(f"Subnets {a} and {b} overlap")

    def nsg_attributes(self, plan: SubnetPlan, location: str) -> NsgAttributes:
        return NsgAttributes(location=location, rules=list(plan.nsg_rules))


def plan_topology(config: RunConfig) -> NetworkTopology:
    """Build the deterministic network plan for a run.

    Raises:
        TopologyError: If the address space cannot host the requested roles.
    """
    if config.network is None:
        raise TopologyError("No network settings configured")

    network = config.network
    prefix = config.resource_group_prefix
    cidrs = {role: compute_subnet_cidr(network.address_space, role) for role in network.roles}

    subnets: list[SubnetPlan] = []
    for role in network.roles:
        delegation = SUBNET_ROLES[role].delegation
        if role in network.delegation_overrides:
            delegation = network.delegation_overrides[role] or None
        subnets.append(
            SubnetPlan(
                role=role,
                name=subnet_name(prefix, role),
                cidr=cidrs[role],
                nsg_name=nsg_name(prefix, role),
                nsg_rules=tuple(nsg_rules_for_role(role, cidrs)),
                delegation=delegation,
            )
        )

    return NetworkTopology(
        vnet_name=network.vnet_name,
        address_space=network.address_space,
        subnets=tuple(subnets),
    )
