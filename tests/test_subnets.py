import itertools

import pytest

from allocator import IPRange, ip_to_int
from errors import (
    ConfigError,
    GatewayInsidePool,
    GatewayOutsideCidr,
    InvalidAddress,
    InvalidCidr,
    InvalidRangeFormat,
    OverlappingRanges,
    RangeInverted,
    RangeOutsideCidr,
)
from subnets import (
    resolve_assignments,
    resolve_subnet,
    validate_and_sort_ranges,
    validate_cidr,
    validate_ip,
    validate_ip_range,
)


def rng(start, end):
    return IPRange(ip_to_int(start), ip_to_int(end))


# ============ VALIDATORS ============


@pytest.mark.parametrize("cidr", ["1.2.3.4/32", "1.2.3.0/24"])
def test_validate_cidr_accepts(cidr):
    validate_cidr(cidr)


@pytest.mark.parametrize("cidr", ["255.355.0.0/24", "1.2.3.0/33", "8193"])
def test_validate_cidr_rejects(cidr):
    with pytest.raises(InvalidCidr, match="is not valid"):
        validate_cidr(cidr)


def test_validate_ip():
    assert validate_ip("1.2.3.1") == ip_to_int("1.2.3.1")
    for bad in ["4095", "1.2.355.1", "swqfrewq"]:
        with pytest.raises(InvalidAddress, match="is not a valid"):
            validate_ip(bad)


def test_validate_ip_range_accepts():
    assert validate_ip_range("1.2.3.4-1.2.3.50") == rng("1.2.3.4", "1.2.3.50")
    assert validate_ip_range("  1.2.3.4-1.2.3.50 ") == rng("1.2.3.4", "1.2.3.50")


@pytest.mark.parametrize(
    "value, error, message",
    [
        ("1.2.3.4", InvalidRangeFormat, "is not valid"),
        ("1234", InvalidRangeFormat, "is not valid"),
        ("asdfsdgas", InvalidRangeFormat, "is not valid"),
        ("1.2.3.4 - 1.2.3.50", InvalidRangeFormat, "is not valid"),
        ("1.2.355.5-1.2.3.60", InvalidAddress, "Start IP '1.2.355.5'"),
        ("1.2.3.5-1.355.3.60", InvalidAddress, "End IP '1.355.3.60'"),
        ("1.2.3.50-1.2.3.20", RangeInverted, "needs to be smaller than"),
        ("1.2.3.50-1.2.3.50", RangeInverted, "needs to be smaller than"),
    ],
)
def test_validate_ip_range_rejects(value, error, message):
    with pytest.raises(error, match=message):
        validate_ip_range(value)


R1 = rng("1.2.3.4", "1.2.3.40")
R2 = rng("1.2.3.50", "1.2.3.70")
R3 = rng("1.2.3.80", "1.2.3.100")
R4 = rng("1.2.3.30", "1.2.3.60")


@pytest.mark.parametrize("order", list(itertools.permutations([R1, R2, R3])))
def test_sort_ranges_any_order(order):
    assert validate_and_sort_ranges(list(order)) == [R1, R2, R3]


@pytest.mark.parametrize("ranges", [[R1, R4], [R1, R4, R3], [R3, R2, R4]])
def test_sort_ranges_rejects_overlap(ranges):
    with pytest.raises(OverlappingRanges, match="Overlapping IP ranges"):
        validate_and_sort_ranges(ranges)


# ============ RESOLUTION ============


@pytest.mark.parametrize(
    "gw, pool, exp_gw, exp_iface, exp_pools",
    [
        # Interface takes the first pool address, as the NSX provider tests expect
        ("1.2.3.1", ["1.2.3.5-1.2.3.50"], "1.2.3.1", "1.2.3.5", ["1.2.3.6-1.2.3.50"]),
        ("", ["1.2.3.5-1.2.3.50"], "1.2.3.5", "1.2.3.6", ["1.2.3.7-1.2.3.50"]),
        (None, ["1.2.3.5-1.2.3.50"], "1.2.3.5", "1.2.3.6", ["1.2.3.7-1.2.3.50"]),
        ("1.2.3.1", [], "1.2.3.1", "1.2.3.2", ["1.2.3.3-1.2.3.254"]),
        (None, None, "1.2.3.1", "1.2.3.2", ["1.2.3.3-1.2.3.254"]),
    ],
)
def test_resolve_subnet_derivation(gw, pool, exp_gw, exp_iface, exp_pools):
    subnet = resolve_subnet("1.2.3.0/24", gw, pool)
    assert subnet.cidr == "1.2.3.0/24"
    assert subnet.network_address == "1.2.3.0"
    assert subnet.netmask == "255.255.255.0"
    assert subnet.default_gateway == exp_gw
    assert subnet.interface_address == exp_iface
    assert subnet.pool_strings == exp_pools


def test_resolve_interior_gateway_splits_pool():
    subnet = resolve_subnet("10.0.0.0/24", "10.0.0.100")
    assert subnet.default_gateway == "10.0.0.100"
    assert subnet.interface_address == "10.0.0.1"
    assert subnet.pool_strings == ["10.0.0.2-10.0.0.99", "10.0.0.101-10.0.0.254"]


def test_resolve_last_address_gateway():
    subnet = resolve_subnet("10.0.0.0/24", "10.0.0.254")
    assert subnet.interface_address == "10.0.0.1"
    assert subnet.pool_strings == ["10.0.0.2-10.0.0.253"]


def test_resolve_multiple_pools_sorted():
    subnet = resolve_subnet(
        "1.2.3.0/24",
        "1.2.3.1",
        ["1.2.3.80-1.2.3.100", "1.2.3.4-1.2.3.40", "1.2.3.50-1.2.3.70"],
    )
    assert subnet.interface_address == "1.2.3.4"
    assert subnet.pool_strings == [
        "1.2.3.5-1.2.3.40",
        "1.2.3.50-1.2.3.70",
        "1.2.3.80-1.2.3.100",
    ]


def test_resolve_accepts_single_pool_string():
    subnet = resolve_subnet("1.2.3.0/24", "1.2.3.1", "1.2.3.5-1.2.3.50")
    assert subnet.pool_strings == ["1.2.3.6-1.2.3.50"]


def test_resolve_normalizes_host_bits():
    assert resolve_subnet("1.2.3.77/24").cidr == "1.2.3.0/24"


def test_resolve_smallest_block():
    subnet = resolve_subnet("10.0.0.0/30")
    assert subnet.default_gateway == "10.0.0.1"
    assert subnet.interface_address == "10.0.0.2"
    assert subnet.pool_ranges == ()


@pytest.mark.parametrize("cidr", ["1.2.3.0/31", "1.2.3.4/32"])
def test_resolve_rejects_tiny_cidr(cidr):
    with pytest.raises(InvalidCidr):
        resolve_subnet(cidr)


def test_resolve_two_address_pool_is_fully_consumed():
    subnet = resolve_subnet("10.0.0.0/24", None, ["10.0.0.5-10.0.0.6", "10.0.0.20-10.0.0.30"])
    assert subnet.default_gateway == "10.0.0.5"
    assert subnet.interface_address == "10.0.0.6"
    assert subnet.pool_strings == ["10.0.0.20-10.0.0.30"]


@pytest.mark.parametrize(
    "gw, pool, error, message",
    [
        ("1.2.3.10", ["1.2.3.5-1.2.3.50"], GatewayInsidePool, "is part of IP range"),
        ("11.22.33.10", ["1.2.3.5-1.2.3.50"], GatewayOutsideCidr, "does not belong to CIDR"),
        ("1.2.3.1", ["11.22.33.5-11.22.33.50"], RangeOutsideCidr, "does not belong to CIDR"),
        ("1.2.3.1", ["1.2.3.5-1.2.3.50", "1.2.3.25-1.2.3.35"], OverlappingRanges, "Overlapping"),
        ("1.2.3.1", ["1.2.3.50-1.2.3.20"], RangeInverted, "needs to be smaller than"),
        ("1.2.3.1", ["1.2.4.50-1.2.3.20"], RangeOutsideCidr, "does not belong to CIDR"),
        ("1.2.3.1", ["1.2.3.5"], InvalidRangeFormat, "is not valid"),
        ("1.2.3.355", None, InvalidAddress, "1.2.3.355"),
    ],
)
def test_resolve_subnet_errors(gw, pool, error, message):
    with pytest.raises(error, match=message):
        resolve_subnet("1.2.3.0/24", gw, pool)


@pytest.mark.parametrize(
    "cidr, gw, pool",
    [
        ("1.2.3.0/24", None, None),
        ("1.2.3.0/24", "1.2.3.128", None),
        ("10.10.0.0/16", None, ["10.10.9.0-10.10.9.255", "10.10.1.10-10.10.1.20"]),
        ("192.168.5.0/26", "192.168.5.62", ["192.168.5.10-192.168.5.20"]),
    ],
)
def test_resolved_subnet_invariants(cidr, gw, pool):
    subnet = resolve_subnet(cidr, gw, pool)
    gateway = ip_to_int(subnet.default_gateway)
    interface = ip_to_int(subnet.interface_address)

    assert interface != gateway
    for r in subnet.pool_ranges:
        assert not r.contains(gateway)
        assert not r.contains(interface)
    starts = [r.start for r in subnet.pool_ranges]
    assert starts == sorted(starts)
    for a, b in zip(subnet.pool_ranges, subnet.pool_ranges[1:]):
        assert a.end < b.start


# ============ ASSIGNMENTS ============


def test_resolve_assignments_merges_same_network():
    assignments = resolve_assignments(
        [
            {"id": "virtualwire-1", "subnets": [{"cidr": "1.2.3.0/24"}]},
            {"id": "virtualwire-2", "subnets": [{"cidr": "4.3.2.0/24"}]},
            {"id": "virtualwire-1", "subnets": [{"cidr": "5.6.7.0/24", "default_gw": "5.6.7.1"}]},
        ]
    )
    assert [a.logical_network_id for a in assignments] == ["virtualwire-1", "virtualwire-2"]
    assert sorted(assignments[0].by_cidr()) == ["1.2.3.0/24", "5.6.7.0/24"]


def test_resolve_assignments_drops_networks_without_subnets():
    assert resolve_assignments([{"id": "virtualwire-1", "subnets": []}]) == []


def test_resolve_assignments_rejects_overlapping_cidrs():
    with pytest.raises(OverlappingRanges, match="virtualwire-2"):
        resolve_assignments(
            [
                {"id": "virtualwire-1", "subnets": [{"cidr": "10.0.0.0/16"}]},
                {"id": "virtualwire-2", "subnets": [{"cidr": "10.0.5.0/24"}]},
            ]
        )


@pytest.mark.parametrize(
    "raw",
    [
        [{"subnets": [{"cidr": "1.2.3.0/24"}]}],
        [{"id": "virtualwire-1", "subnets": [{"default_gw": "1.2.3.1"}]}],
        ["virtualwire-1"],
    ],
)
def test_resolve_assignments_missing_fields(raw):
    with pytest.raises(ConfigError, match="missing required field"):
        resolve_assignments(raw)
