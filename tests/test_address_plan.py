import ipaddress

import pytest

from overlay_topo.errors import ConfigError, InvalidAddress, RangeExceeded
from overlay_topo.planning import addresses, naming


def test_index_one_gets_first_node_block():
    pair = addresses.plan("172.16.0.0/16", 1)
    assert str(pair.outside) == "172.16.1.1/24"
    assert str(pair.inside) == "172.16.1.2/24"
    assert pair.default_route_target == "172.16.1.1"
    assert pair.network == ipaddress.IPv4Network("172.16.1.0/24")


def test_plan_is_deterministic():
    assert addresses.plan("10.20.0.0/16", 7) == addresses.plan("10.20.0.0/16", 7)


def test_slash16_capacity_and_bounds():
    assert addresses.capacity("172.16.0.0/16") == 254
    last = addresses.plan("172.16.0.0/16", 254)
    assert str(last.inside) == "172.16.254.2/24"
    with pytest.raises(RangeExceeded):
        addresses.plan("172.16.0.0/16", 255)
    with pytest.raises(RangeExceeded):
        addresses.plan("172.16.0.0/16", 0)


def test_fleet_pairs_are_disjoint_and_avoid_host_block():
    pairs = addresses.plan_fleet("172.16.0.0/16", 254)
    nets = {p.network for p in pairs}
    assert len(nets) == 254
    mgmt = addresses.host_management_address("172.16.0.0/16")
    assert str(mgmt) == "172.16.0.1/24"
    assert all(mgmt.ip not in n for n in nets)


def test_plan_fleet_rejects_oversize_and_empty():
    with pytest.raises(RangeExceeded):
        addresses.plan_fleet("172.16.0.0/22", 3)
    assert len(addresses.plan_fleet("172.16.0.0/22", 2)) == 2
    with pytest.raises(RangeExceeded):
        addresses.plan_fleet("172.16.0.0/16", 0)


def test_supernet_validation():
    with pytest.raises(InvalidAddress):
        addresses.parse_supernet("not-a-net")
    with pytest.raises(InvalidAddress):
        addresses.parse_supernet("172.16.0.0/25")
    with pytest.raises(InvalidAddress):
        addresses.parse_supernet("fd00::/64")


def test_owner_of_inverse_lookup():
    net = "172.16.0.0/16"
    for i in (1, 2, 100, 254):
        pair = addresses.plan(net, i)
        assert addresses.owner_of(net, pair.inside) == i
        assert addresses.owner_of(net, str(pair.outside.ip)) == i
    assert addresses.owner_of(net, "172.16.0.1") is None
    assert addresses.owner_of(net, "172.16.5.77") is None
    assert addresses.owner_of(net, "192.168.1.2") is None
    with pytest.raises(InvalidAddress):
        addresses.owner_of(net, "172.16.1")


def test_names_are_derived_from_index():
    pair = addresses.plan("172.16.0.0/16", 12)
    dom = naming.routing_domain("ovl", pair)
    assert dom.name == "ovl12"
    assert (dom.link_inside, dom.link_outside) == ("ovl12-in", "ovl12-out")
    assert naming.key_file("/w", "host").name == "host_key.bin"
    assert naming.log_file("/w", 3).name == "node3.log"
    assert naming.endpoint("tcp", "172.16.1.1", 9651) == "tcp://172.16.1.1:9651"


@pytest.mark.parametrize("prefix", ["", "1abc", "has-dash", "host", "averyverylongprefix"])
def test_bad_prefixes_rejected(prefix):
    with pytest.raises(ConfigError):
        naming.validate_prefix(prefix, 254)


def test_prefix_length_checked_against_largest_index():
    naming.validate_prefix("overlay", 9)
    with pytest.raises(ConfigError):
        # overlayxy100-out is 16 chars
        naming.validate_prefix("overlayxy", 100)


def test_bool_is_not_a_node_index():
    with pytest.raises(RangeExceeded):
        addresses.plan("172.16.0.0/16", True)
