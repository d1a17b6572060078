"""
Address math and interface-slot allocation
Integer IPv4 ranges plus the gateway's fixed interface table
"""

import ipaddress
from dataclasses import dataclass, field
from typing import List, Optional

from errors import InvalidAddress, InvalidCidr, NoFreeInterfaceSlot
from logconf import get_logger

logger = get_logger(__name__)

# Anything longer leaves fewer than 2 usable host addresses
MAX_RANGE_PREFIX = 30

DEFAULT_INTERFACE_SLOTS = 10


# ============ ADDRESS MATH ============


def ip_to_int(ip: str) -> int:
    try:
        return int(ipaddress.IPv4Address(ip.strip()))
    except (ipaddress.AddressValueError, AttributeError):
        raise InvalidAddress(f"IP '{ip}' is not a valid IPv4 address")


def int_to_ip(ip_int: int) -> str:
    try:
        return str(ipaddress.IPv4Address(ip_int))
    except ipaddress.AddressValueError:
        raise InvalidAddress(f"{ip_int} is outside the 32-bit IPv4 address space")


def parse_cidr(cidr: str) -> ipaddress.IPv4Network:
    """Parse 'a.b.c.d/len'; host bits are allowed and masked off"""
    if not isinstance(cidr, str) or "/" not in cidr:
        raise InvalidCidr(f"CIDR '{cidr}' is not valid: expected a.b.c.d/prefix")
    try:
        return ipaddress.IPv4Network(cidr.strip(), strict=False)
    except ValueError as e:
        raise InvalidCidr(f"CIDR '{cidr}' is not valid: {e}")


def ip_in_cidr(ip: str, cidr: str) -> bool:
    network = parse_cidr(cidr)
    return network.network_address <= ipaddress.IPv4Address(ip_to_int(ip)) <= network.broadcast_address


@dataclass(frozen=True, order=True)
class IPRange:
    """Inclusive range of integer addresses; start <= end"""

    start: int
    end: int

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"IPRange start {self.start} is after end {self.end}")

    def __str__(self):
        return f"{int_to_ip(self.start)}-{int_to_ip(self.end)}"

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def contains(self, ip_int: int) -> bool:
        return self.start <= ip_int <= self.end


def cidr_to_usable_range(cidr: str) -> IPRange:
    """Usable host range (network+1 .. broadcast-1) of a CIDR"""
    network = parse_cidr(cidr)
    if network.prefixlen > MAX_RANGE_PREFIX:
        raise InvalidCidr(
            f"CIDR '{cidr}' is not valid to configure IP ranges: "
            f"/{network.prefixlen} has fewer than 2 usable host addresses"
        )
    return IPRange(
        int(network.network_address) + 1,
        int(network.broadcast_address) - 1,
    )


def ranges_overlap(a: IPRange, b: IPRange) -> bool:
    return not (a.end < b.start or a.start > b.end)


def exclude_address(rng: IPRange, ip_int: int) -> List[IPRange]:
    """Split a range around one address; ranges left empty are dropped"""
    if not rng.contains(ip_int):
        return [rng]

    result = []
    if ip_int > rng.start:
        result.append(IPRange(rng.start, ip_int - 1))
    if ip_int < rng.end:
        result.append(IPRange(ip_int + 1, rng.end))
    return result


# ============ INTERFACE SLOTS ============


@dataclass
class AddressGroup:
    """A gateway's presence on one subnet"""

    primary_address: str
    subnet_mask: str


@dataclass
class InterfaceSlot:
    index: int
    logical_network_id: Optional[str] = None
    address_groups: List[AddressGroup] = field(default_factory=list)
    connected: bool = False
    name: Optional[str] = None

    def __repr__(self):
        state = "connected" if self.connected else "free"
        return f"<InterfaceSlot {self.index}: {self.logical_network_id or '-'} ({state})>"


class InterfaceSlotAllocator:
    """
    Binds logical networks to a fixed table of interface slots.
    Mutates the slot list it is given; the caller writes it back.
    """

    def __init__(self, slots: List[InterfaceSlot], capacity: int = DEFAULT_INTERFACE_SLOTS):
        if capacity < 1:
            raise ValueError(f"Interface slot capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.slots = slots

        # Gateways may report only configured slots; fill the gaps
        present = {slot.index for slot in slots}
        for index in range(capacity):
            if index not in present:
                slots.append(InterfaceSlot(index=index))
        slots.sort(key=lambda s: s.index)

    def _managed(self) -> List[InterfaceSlot]:
        return [slot for slot in self.slots if slot.index < self.capacity]

    def find(self, logical_network_id: str) -> Optional[InterfaceSlot]:
        for slot in self._managed():
            if slot.logical_network_id == logical_network_id:
                return slot
        return None

    def _first_free(self) -> Optional[InterfaceSlot]:
        for slot in self._managed():
            if not slot.connected:
                return slot
        return None

    @staticmethod
    def _group_index(slot: InterfaceSlot, subnet) -> Optional[int]:
        for i, group in enumerate(slot.address_groups):
            try:
                if ip_in_cidr(group.primary_address, subnet.cidr):
                    return i
            except InvalidAddress:
                # IPv6 groups on the live gateway are not ours to manage
                continue
        return None

    def attach(self, logical_network_id: str, subnets) -> InterfaceSlot:
        """Attach subnets to the logical network's slot, claiming one if needed"""
        slot = self.find(logical_network_id)
        if slot is None:
            slot = self._first_free()
            if slot is None:
                raise NoFreeInterfaceSlot(
                    f"No free interface slot for logical network '{logical_network_id}': "
                    f"all {self.capacity} slots are connected"
                )
            logger.info(f"Claiming interface slot {slot.index} for {logical_network_id}")
            slot.logical_network_id = logical_network_id
            slot.address_groups = []
        slot.connected = True

        for subnet in subnets:
            if self._group_index(slot, subnet) is not None:
                continue
            slot.address_groups.append(AddressGroup(subnet.interface_address, subnet.netmask))
            logger.debug(f"Slot {slot.index}: added address group {subnet.interface_address}/{subnet.netmask}")
        return slot

    def detach(self, logical_network_id: str, subnets, release: bool = True) -> bool:
        """
        Remove subnets from the logical network's slot; True when the slot was released.
        With release=False an emptied slot stays bound, for an attach in the same pass.
        """
        slot = self.find(logical_network_id)
        if slot is None:
            logger.warning(f"Logical network '{logical_network_id}' is not attached; nothing to detach")
            return False

        for subnet in subnets:
            i = self._group_index(slot, subnet)
            if i is None:
                logger.info(f"Slot {slot.index}: no address group in {subnet.cidr}")
                continue
            # Order of address groups carries no meaning
            groups = slot.address_groups
            groups[i] = groups[-1]
            groups.pop()

        if slot.address_groups or not release:
            return False

        logger.info(f"Releasing interface slot {slot.index} from {logical_network_id}")
        slot.logical_network_id = None
        slot.connected = False
        return True

    def has_connected_slots(self) -> bool:
        return any(slot.connected for slot in self._managed())
