"""Tests for subnet partitioning and NSG rule planning."""

import ipaddress

import pytest

from fake_cloud.landing_zone import make_config, network_settings
from lzctl.topology import (
    APP_SERVICE_DELEGATION,
    FRONT_DOOR_SERVICE_TAG,
    POSTGRES_DELEGATION,
    SUBNET_ROLES,
    NetworkTopology,
    SubnetPlan,
    TopologyError,
    compute_subnet_cidr,
    nsg_name,
    nsg_rules_for_role,
    plan_topology,
    subnet_base_name,
    subnet_name,
)


class TestComputeSubnetCidr:
    """Tests for fixed-offset subnet CIDRs."""

    def test_slash_24_layout(self) -> None:
        """Test the reference /24 layout."""
        assert compute_subnet_cidr("10.0.0.0/24", "app") == "10.0.0.0/25"
        assert compute_subnet_cidr("10.0.0.0/24", "privateendpoints") == "10.0.0.128/27"
        assert compute_subnet_cidr("10.0.0.0/24", "web") == "10.0.0.160/28"
        assert compute_subnet_cidr("10.0.0.0/24", "data") == "10.0.0.176/28"

    def test_slash_16_scales(self) -> None:
        assert compute_subnet_cidr("10.20.0.0/16", "app") == "10.20.0.0/17"
        assert compute_subnet_cidr("10.20.0.0/16", "privateendpoints") == "10.20.128.0/19"
        assert compute_subnet_cidr("10.20.0.0/16", "web") == "10.20.160.0/20"
        assert compute_subnet_cidr("10.20.0.0/16", "data") == "10.20.176.0/20"

    @pytest.mark.parametrize("address_space", ["10.0.0.0/8", "172.16.0.0/12", "10.1.0.0/20", "10.1.2.0/25"])
    def test_partition_is_disjoint_and_contained(self, address_space: str) -> None:
        """Test that every role block sits inside the VNet without overlap."""
        vnet = ipaddress.IPv4Network(address_space)
        blocks = [
            ipaddress.IPv4Network(compute_subnet_cidr(address_space, role))
            for role in SUBNET_ROLES
        ]

        for block in blocks:
            assert block.subnet_of(vnet)
        for i, a in enumerate(blocks):
            for b in blocks[i + 1 :]:
                assert not a.overlaps(b)

    def test_unknown_role(self) -> None:
        with pytest.raises(TopologyError) as exc_info:
            compute_subnet_cidr("10.0.0.0/24", "gateway")

        assert "Unknown subnet role" in str(exc_info.value)

    def test_too_small(self) -> None:
        with pytest.raises(TopologyError) as exc_info:
            compute_subnet_cidr("10.0.0.0/26", "web")

        assert "too small" in str(exc_info.value)


class TestNaming:
    """Tests for the subnet and NSG naming convention."""

    def test_subnet_and_nsg_names(self) -> None:
        assert subnet_name("myapp-dev", "web") == "myapp-dev-web-subnet"
        assert nsg_name("myapp-dev", "web") == "myapp-dev-web-nsg"

    def test_subnet_base_name_inverts_subnet_name(self) -> None:
        assert subnet_base_name("myapp-dev", "myapp-dev-data-subnet") == "data"

    def test_subnet_base_name_passes_unconventional_names(self) -> None:
        assert subnet_base_name("myapp-dev", "legacy") == "legacy"


class TestNsgRules:
    """Tests for per-role inbound rules."""

    CIDRS = {
        "app": "10.0.0.0/25",
        "privateendpoints": "10.0.0.128/27",
        "web": "10.0.0.160/28",
        "data": "10.0.0.176/28",
    }

    def test_web_allows_front_door(self) -> None:
        rules = nsg_rules_for_role("web", self.CIDRS)

        sources = {(r.source_address_prefix, r.destination_port_range) for r in rules}
        assert (FRONT_DOOR_SERVICE_TAG, "443") in sources
        assert (FRONT_DOOR_SERVICE_TAG, "80") in sources

    def test_data_allows_only_app_postgres(self) -> None:
        rules = nsg_rules_for_role("data", self.CIDRS)

        allows = [r for r in rules if r.access == "Allow"]
        assert len(allows) == 1
        assert allows[0].source_address_prefix == "10.0.0.0/25"
        assert allows[0].destination_port_range == "5432"

    def test_every_role_ends_with_vnet_deny(self) -> None:
        for role in SUBNET_ROLES:
            rules = nsg_rules_for_role(role, self.CIDRS)
            assert rules[-1].name == "deny-vnet-inbound"
            assert rules[-1].access == "Deny"

    def test_rules_for_absent_peers_are_omitted(self) -> None:
        rules = nsg_rules_for_role("app", {"app": "10.0.0.0/25"})

        assert [r.name for r in rules] == ["allow-frontdoor-https", "deny-vnet-inbound"]

    def test_priorities_are_unique(self) -> None:
        for role in SUBNET_ROLES:
            priorities = [r.priority for r in nsg_rules_for_role(role, self.CIDRS)]
            assert len(priorities) == len(set(priorities))


class TestPlanTopology:
    """Tests for the full network plan."""

    def test_plan_for_default_roles(self) -> None:
        topology = plan_topology(make_config(network=network_settings()))

        by_role = {s.role: s for s in topology.subnets}
        assert set(by_role) == {"app", "privateendpoints", "web", "data"}
        assert by_role["app"].name == "myapp-dev-app-subnet"
        assert by_role["app"].nsg_name == "myapp-dev-app-nsg"
        assert by_role["app"].delegation == APP_SERVICE_DELEGATION
        assert by_role["data"].delegation == POSTGRES_DELEGATION
        assert by_role["web"].delegation is None

    def test_delegation_override_disables(self) -> None:
        config = make_config(network=network_settings(delegation_overrides={"app": ""}))

        topology = plan_topology(config)

        app = next(s for s in topology.subnets if s.role == "app")
        assert app.delegation is None

    def test_delegation_override_replaces(self) -> None:
        config = make_config(
            network=network_settings(delegation_overrides={"app": "Microsoft.App/environments"})
        )

        app = next(s for s in plan_topology(config).subnets if s.role == "app")
        assert app.delegation == "Microsoft.App/environments"

    def test_subset_of_roles(self) -> None:
        config = make_config(network=network_settings(roles=("web", "data")))

        topology = plan_topology(config)

        assert [s.role for s in topology.subnets] == ["web", "data"]

    def test_requires_network_settings(self) -> None:
        with pytest.raises(TopologyError):
            plan_topology(make_config())

    def test_overlapping_subnets_rejected(self) -> None:
        plan = SubnetPlan(role="app", name="a", cidr="10.0.0.0/25", nsg_name="a-nsg", nsg_rules=())
        other = SubnetPlan(role="web", name="b", cidr="10.0.0.64/26", nsg_name="b-nsg", nsg_rules=())

        with pytest.raises(TopologyError) as exc_info:
            NetworkTopology(vnet_name="v", address_space="10.0.0.0/24", subnets=(plan, other))

        assert "overlap" in str(exc_info.value)

    def test_subnet_outside_vnet_rejected(self) -> None:
        plan = SubnetPlan(role="app", name="a", cidr="10.0.1.0/25", nsg_name="a-nsg", nsg_rules=())

        with pytest.raises(TopologyError):
            NetworkTopology(vnet_name="v", address_space="10.0.0.0/24", subnets=(plan,))
