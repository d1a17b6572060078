import copy

import pytest

from allocator import InterfaceSlot
from errors import ExternalServiceError
from gateway import GatewayDescriptor, PoolEntry


class FakeGatewayClient:
    """In-memory gateway that records every call in order"""

    def __init__(self, gateway_id="edge-1", slots=None, pools=None):
        self.descriptor = GatewayDescriptor(
            gateway_id,
            slots=slots if slots is not None else [InterfaceSlot(i) for i in range(10)],
            appliances_deployed=True,
        )
        self.pools = list(pools or [])
        self.calls = []
        self.fail_on = None
        self._next_pool = 1

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_on == name:
            raise ExternalServiceError(f"{name} failed", kind=ExternalServiceError.UNAVAILABLE)

    @property
    def call_names(self):
        return [c[0] for c in self.calls]

    def fetch_gateway(self, gateway_id):
        self._call("fetch_gateway", gateway_id)
        return copy.deepcopy(self.descriptor)

    def write_gateway(self, descriptor):
        self._call("write_gateway", descriptor.gateway_id)
        self.descriptor = copy.deepcopy(descriptor)

    def fetch_provisioned_pools(self, gateway_id):
        self._call("fetch_provisioned_pools", gateway_id)
        return [copy.copy(p) for p in self.pools]

    def add_pool_entry(self, gateway_id, ip_range, default_gateway, subnet_mask):
        self._call("add_pool_entry", ip_range)
        pool_id = f"pool-{self._next_pool}"
        self._next_pool += 1
        self.pools.append(PoolEntry(ip_range, default_gateway, subnet_mask, pool_id))
        return pool_id

    def delete_pool_entry(self, gateway_id, pool_id):
        self._call("delete_pool_entry", pool_id)
        self.pools = [p for p in self.pools if p.pool_id != pool_id]

    def close(self):
        pass

    @property
    def pool_ranges(self):
        return sorted(p.ip_range for p in self.pools)


@pytest.fixture
def fake_client():
    return FakeGatewayClient()
