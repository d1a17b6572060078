"""
Reconciliation engine
Diffs previous and desired logical-network assignments into slot and pool
operations, then drives the gateway client in dependency order
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from allocator import DEFAULT_INTERFACE_SLOTS, InterfaceSlotAllocator
from gateway import GatewayClient, PoolEntry
from logconf import get_logger
from subnets import LogicalNetworkAssignment, Subnet

logger = get_logger(__name__)


@dataclass
class SlotChange:
    logical_network_id: str
    subnets: Tuple[Subnet, ...]


@dataclass
class Plan:
    detach: List[SlotChange] = field(default_factory=list)
    attach: List[SlotChange] = field(default_factory=list)
    delete_pools: List[Subnet] = field(default_factory=list)
    add_pools: List[Subnet] = field(default_factory=list)
    unchanged: List[Tuple[str, str]] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.detach or self.attach or self.delete_pools or self.add_pools)

    @property
    def changes_slots(self) -> bool:
        return bool(self.detach or self.attach)

    def operations(self) -> List[Tuple[str, str, str]]:
        """(action, subject, detail) rows in execution order"""
        rows = []
        for subnet in self.delete_pools:
            for r in subnet.pool_ranges:
                rows.append(("delete pool", subnet.cidr, str(r)))
        for change in self.detach:
            for subnet in change.subnets:
                rows.append(("detach", change.logical_network_id, subnet.cidr))
        for change in self.attach:
            for subnet in change.subnets:
                rows.append(
                    ("attach", change.logical_network_id, f"{subnet.cidr} via {subnet.interface_address}")
                )
        for subnet in self.add_pools:
            for r in subnet.pool_ranges:
                rows.append(("add pool", subnet.cidr, f"{r} gw {subnet.default_gateway}"))
        return rows


@dataclass
class ReconcileResult:
    gateway_id: str
    gateway_written: bool = False
    added_pools: List[PoolEntry] = field(default_factory=list)
    deleted_pools: List[PoolEntry] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def _index(assignments: Sequence[LogicalNetworkAssignment]) -> Dict[str, Dict[str, Subnet]]:
    indexed: Dict[str, Dict[str, Subnet]] = {}
    for a in assignments:
        indexed.setdefault(a.logical_network_id, {}).update(a.by_cidr())
    return indexed


def plan_reconciliation(
    previous: Sequence[LogicalNetworkAssignment],
    desired: Sequence[LogicalNetworkAssignment],
) -> Plan:
    """
    Compute the minimal operation set moving previous -> desired.

    Keys are logical-network id, then normalized CIDR. A subnet whose gateway
    or pools changed but whose interface address and netmask did not is
    modified in place (pools only); an interface change is detach + attach.
    """
    prev = _index(previous)
    want = _index(desired)
    plan = Plan()

    # Logical networks dropped entirely
    for ln_id, old in prev.items():
        if ln_id in want:
            continue
        subnets = tuple(old.values())
        plan.detach.append(SlotChange(ln_id, subnets))
        plan.delete_pools.extend(subnets)

    for ln_id, new in want.items():
        old = prev.get(ln_id, {})
        to_attach = []
        to_detach = []

        for cidr, subnet in new.items():
            before = old.get(cidr)
            if before is None:
                to_attach.append(subnet)
                plan.add_pools.append(subnet)
            elif before == subnet:
                plan.unchanged.append((ln_id, cidr))
            elif before.same_interface(subnet):
                plan.delete_pools.append(before)
                plan.add_pools.append(subnet)
            else:
                to_detach.append(before)
                to_attach.append(subnet)
                plan.delete_pools.append(before)
                plan.add_pools.append(subnet)

        for cidr, before in old.items():
            if cidr not in new:
                to_detach.append(before)
                plan.delete_pools.append(before)

        if to_detach:
            plan.detach.append(SlotChange(ln_id, tuple(to_detach)))
        if to_attach:
            plan.attach.append(SlotChange(ln_id, tuple(to_attach)))

    return plan


class ReconciliationEngine:
    """
    Executes a plan against one gateway.

    Order: slot bookkeeping in memory (so a full slot table fails before any
    write), pool deletes, gateway write-back, pool adds. The first external
    failure propagates; earlier calls are not rolled back.
    """

    def __init__(self, client: GatewayClient, interface_slots: int = DEFAULT_INTERFACE_SLOTS):
        self.client = client
        self.interface_slots = interface_slots

    def reconcile(
        self,
        gateway_id: str,
        previous: Sequence[LogicalNetworkAssignment],
        desired: Sequence[LogicalNetworkAssignment],
    ) -> ReconcileResult:
        return self.apply(gateway_id, plan_reconciliation(previous, desired))

    def apply(self, gateway_id: str, plan: Plan) -> ReconcileResult:
        result = ReconcileResult(gateway_id)
        if plan.is_empty():
            logger.info(f"{gateway_id}: configuration unchanged, nothing to do")
            return result

        descriptor = None
        if plan.changes_slots:
            logger.info(f"{gateway_id}: fetching interface table")
            descriptor = self.client.fetch_gateway(gateway_id)
            allocator = InterfaceSlotAllocator(descriptor.slots, self.interface_slots)
            # A network detached and re-attached in one pass keeps its slot
            reattached = {c.logical_network_id for c in plan.attach}
            for change in plan.detach:
                allocator.detach(
                    change.logical_network_id,
                    change.subnets,
                    release=change.logical_network_id not in reattached,
                )
            for change in plan.attach:
                allocator.attach(change.logical_network_id, change.subnets)
            descriptor.appliances_deployed = allocator.has_connected_slots()

        provisioned = []
        if plan.delete_pools or plan.add_pools:
            logger.info(f"{gateway_id}: fetching provisioned DHCP pools")
            provisioned = self.client.fetch_provisioned_pools(gateway_id)
            if descriptor is not None:
                descriptor.pools = provisioned

        for subnet in plan.delete_pools:
            self._delete_pools(gateway_id, subnet, provisioned, result)

        if descriptor is not None:
            logger.info(
                f"{gateway_id}: writing interface table "
                f"(appliances deployed: {descriptor.appliances_deployed})"
            )
            self.client.write_gateway(descriptor)
            result.gateway_written = True

        for subnet in plan.add_pools:
            self._add_pools(gateway_id, subnet, provisioned, result)

        return result

    def _delete_pools(self, gateway_id, subnet: Subnet, provisioned: List[PoolEntry], result):
        for ip_range in subnet.pool_strings:
            entry = next((p for p in provisioned if p.ip_range == ip_range), None)
            if entry is None:
                logger.info(f"{gateway_id}: DHCP pool {ip_range} already absent")
                result.skipped.append(f"delete {ip_range}")
                continue
            logger.info(f"{gateway_id}: deleting DHCP pool {ip_range} ({entry.pool_id})")
            self.client.delete_pool_entry(gateway_id, entry.pool_id)
            provisioned.remove(entry)
            result.deleted_pools.append(entry)

    def _add_pools(self, gateway_id, subnet: Subnet, provisioned: List[PoolEntry], result):
        for ip_range in subnet.pool_strings:
            existing = next((p for p in provisioned if p.ip_range == ip_range), None)
            if existing is not None:
                if (
                    existing.default_gateway == subnet.default_gateway
                    and existing.subnet_mask == subnet.netmask
                ):
                    # Left behind by an interrupted pass
                    logger.info(f"{gateway_id}: DHCP pool {ip_range} already provisioned")
                    result.skipped.append(f"add {ip_range}")
                    continue
                logger.warning(
                    f"{gateway_id}: DHCP pool {ip_range} is provisioned with gw "
                    f"{existing.default_gateway} mask {existing.subnet_mask}; replacing it"
                )
                self.client.delete_pool_entry(gateway_id, existing.pool_id)
                provisioned.remove(existing)
                result.deleted_pools.append(existing)
            logger.info(f"{gateway_id}: adding DHCP pool {ip_range} gw {subnet.default_gateway}")
            pool_id = self.client.add_pool_entry(
                gateway_id, ip_range, subnet.default_gateway, subnet.netmask
            )
            entry = PoolEntry(ip_range, subnet.default_gateway, subnet.netmask, pool_id)
            provisioned.append(entry)
            result.added_pools.append(entry)
