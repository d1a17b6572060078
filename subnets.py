"""
Subnet resolution
CIDR + optional gateway + optional pool ranges -> fully resolved Subnet
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from allocator import (
    IPRange,
    cidr_to_usable_range,
    exclude_address,
    int_to_ip,
    ip_to_int,
    parse_cidr,
    ranges_overlap,
)
from errors import (
    ConfigError,
    GatewayInsidePool,
    GatewayOutsideCidr,
    InvalidAddress,
    InvalidRangeFormat,
    OverlappingRanges,
    RangeInverted,
    RangeOutsideCidr,
)

IP_RANGE_PATTERN = re.compile(r"^\d+\.\d+\.\d+\.\d+-\d+\.\d+\.\d+\.\d+$")


@dataclass(frozen=True)
class Subnet:
    """One address group on the gateway plus the DHCP pools it serves"""

    cidr: str
    network_address: str
    netmask: str
    default_gateway: str
    interface_address: str
    pool_ranges: Tuple[IPRange, ...] = ()

    @property
    def pool_strings(self) -> List[str]:
        return [str(r) for r in self.pool_ranges]

    def same_interface(self, other: "Subnet") -> bool:
        return (
            self.interface_address == other.interface_address
            and self.netmask == other.netmask
        )


@dataclass(frozen=True)
class LogicalNetworkAssignment:
    logical_network_id: str
    subnets: Tuple[Subnet, ...]

    def by_cidr(self) -> Dict[str, Subnet]:
        return {s.cidr: s for s in self.subnets}


# ============ VALIDATORS ============


def validate_cidr(cidr: str):
    return parse_cidr(cidr)


def validate_ip(ip: str) -> int:
    return ip_to_int(ip)


def _parse_range_endpoints(ip_range: str) -> Tuple[int, int]:
    value = ip_range.strip() if isinstance(ip_range, str) else ip_range
    if not isinstance(value, str) or not IP_RANGE_PATTERN.match(value):
        raise InvalidRangeFormat(
            f"IP range '{ip_range}' is not valid: expected <start>-<end> in dot-decimal"
        )

    start_ip, end_ip = value.split("-")
    try:
        start = ip_to_int(start_ip)
    except InvalidAddress:
        raise InvalidAddress(f"Start IP '{start_ip}' is not valid in range '{ip_range}'")
    try:
        end = ip_to_int(end_ip)
    except InvalidAddress:
        raise InvalidAddress(f"End IP '{end_ip}' is not valid in range '{ip_range}'")
    return start, end


def _check_order(start: int, end: int, ip_range: str) -> None:
    if start >= end:
        raise RangeInverted(
            f"Start IP '{int_to_ip(start)}' needs to be smaller than "
            f"End IP '{int_to_ip(end)}' in the range '{ip_range}'"
        )


def validate_ip_range(ip_range: str) -> IPRange:
    start, end = _parse_range_endpoints(ip_range)
    _check_order(start, end, ip_range)
    return IPRange(start, end)


def validate_and_sort_ranges(ranges: Sequence[IPRange]) -> List[IPRange]:
    """Reject any intersecting pair, then order by start address"""
    for i in range(len(ranges)):
        for j in range(i + 1, len(ranges)):
            if ranges_overlap(ranges[i], ranges[j]):
                raise OverlappingRanges(
                    f"Overlapping IP ranges '{ranges[i]}' and '{ranges[j]}'"
                )
    return sorted(ranges, key=lambda r: r.start)


# ============ RESOLUTION ============


def resolve_subnet(
    cidr: str,
    default_gw: Optional[str] = None,
    ip_pool: Optional[Sequence[str]] = None,
) -> Subnet:
    """
    Resolve one subnet.

    The gateway comes from default_gw, else from the first pool address,
    else from the first usable address. The interface address is always the
    first address left in the lowest pool range after the gateway is taken.
    """
    network = validate_cidr(cidr)
    # /31 and /32 fail here, before any range math
    usable = cidr_to_usable_range(cidr)
    net_start = int(network.network_address)
    net_end = int(network.broadcast_address)

    if isinstance(ip_pool, str):
        ip_pool = [ip_pool]

    ranges = []
    for text in ip_pool or []:
        start, end = _parse_range_endpoints(text)
        if not (net_start <= start <= net_end and net_start <= end <= net_end):
            raise RangeOutsideCidr(f"IP range '{text}' does not belong to CIDR {cidr}")
        _check_order(start, end, text)
        ranges.append(IPRange(start, end))
    ranges = validate_and_sort_ranges(ranges)

    gateway = None
    if default_gw:
        gateway = validate_ip(default_gw)
        if not net_start <= gateway <= net_end:
            raise GatewayOutsideCidr(
                f"Default gateway '{default_gw}' does not belong to CIDR {cidr}"
            )
        for r in ranges:
            if r.contains(gateway):
                raise GatewayInsidePool(
                    f"Default gateway '{default_gw}' is part of IP range {r}"
                )

    if gateway is not None and ranges:
        pool = ranges
    elif gateway is not None:
        pool = exclude_address(usable, gateway)
    else:
        if not ranges:
            ranges = [usable]
        gateway = ranges[0].start
        pool = exclude_address(ranges[0], gateway) + ranges[1:]

    # Pools hold >= 2 addresses, so one is always left for the interface
    interface = pool[0].start
    pool = exclude_address(pool[0], interface) + pool[1:]

    return Subnet(
        cidr=str(network),
        network_address=str(network.network_address),
        netmask=str(network.netmask),
        default_gateway=int_to_ip(gateway),
        interface_address=int_to_ip(interface),
        pool_ranges=tuple(pool),
    )


def resolve_assignments(raw_networks: Sequence[dict]) -> List[LogicalNetworkAssignment]:
    """
    Resolve raw logical-network entries ({"id", "subnets": [{"cidr", ...}]}).
    Entries sharing an id are merged; subnet CIDRs must not overlap anywhere.
    """
    merged: Dict[str, List[Subnet]] = {}
    for i, entry in enumerate(raw_networks or []):
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ConfigError(f"Logical network {i} missing required field: 'id'")
        ln_id = str(entry["id"])
        subnets = merged.setdefault(ln_id, [])
        for j, raw in enumerate(entry.get("subnets") or []):
            if not isinstance(raw, dict) or not raw.get("cidr"):
                raise ConfigError(
                    f"Subnet {j} of logical network '{ln_id}' missing required field: 'cidr'"
                )
            subnets.append(
                resolve_subnet(raw["cidr"], raw.get("default_gw"), raw.get("ip_pool"))
            )

    _check_cidrs_disjoint(merged)

    return [
        LogicalNetworkAssignment(ln_id, tuple(subnets))
        for ln_id, subnets in merged.items()
        if subnets
    ]


def _check_cidrs_disjoint(merged: Dict[str, List[Subnet]]) -> None:
    seen = []
    for ln_id, subnets in merged.items():
        for subnet in subnets:
            network = parse_cidr(subnet.cidr)
            for other_id, other in seen:
                if network.overlaps(parse_cidr(other.cidr)):
                    raise OverlappingRanges(
                        f"CIDR {subnet.cidr} on '{ln_id}' overlaps "
                        f"CIDR {other.cidr} on '{other_id}'"
                    )
            seen.append((ln_id, subnet))
