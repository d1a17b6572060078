"""
Gateway-management API
Descriptor types, the client contract the engine relies on, and the NSX
edge implementation (XML over HTTPS)
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from allocator import AddressGroup, InterfaceSlot
from errors import ExternalServiceError
from logconf import get_logger

logger = get_logger(__name__)


@dataclass
class PoolEntry:
    """A DHCP pool provisioned on the gateway"""

    ip_range: str
    default_gateway: Optional[str] = None
    subnet_mask: Optional[str] = None
    pool_id: Optional[str] = None


@dataclass
class GatewayDescriptor:
    gateway_id: str
    slots: List[InterfaceSlot] = field(default_factory=list)
    appliances_deployed: bool = True
    pools: List[PoolEntry] = field(default_factory=list)
    name: Optional[str] = None
    # Unparsed edge document; unknown fields survive the write-back
    raw: Optional[ET.Element] = field(default=None, repr=False, compare=False)

    def __repr__(self):
        return f"<GatewayDescriptor {self.gateway_id}: {len(self.slots)} slots, {len(self.pools)} pools>"


class GatewayClient(Protocol):
    def fetch_gateway(self, gateway_id: str) -> GatewayDescriptor: ...

    def write_gateway(self, descriptor: GatewayDescriptor) -> None: ...

    def add_pool_entry(
        self, gateway_id: str, ip_range: str, default_gateway: str, subnet_mask: str
    ) -> str: ...

    def delete_pool_entry(self, gateway_id: str, pool_id: str) -> None: ...

    def fetch_provisioned_pools(self, gateway_id: str) -> List[PoolEntry]: ...


# ============ XML CODEC ============


def _text(elem: ET.Element, tag: str, default: Optional[str] = None) -> Optional[str]:
    child = elem.find(tag)
    if child is None or child.text is None:
        return default
    return child.text.strip()


def _set_text(parent: ET.Element, tag: str, value: str) -> ET.Element:
    child = parent.find(tag)
    if child is None:
        child = ET.SubElement(parent, tag)
    child.text = value
    return child


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").lower() == "true"


def parse_vnic(elem: ET.Element) -> InterfaceSlot:
    groups = []
    for group in elem.findall("addressGroups/addressGroup"):
        address = _text(group, "primaryAddress")
        if not address:
            continue
        groups.append(AddressGroup(address, _text(group, "subnetMask", "")))
    return InterfaceSlot(
        index=int(_text(elem, "index", "0")),
        logical_network_id=_text(elem, "portgroupId"),
        address_groups=groups,
        connected=_parse_bool(_text(elem, "isConnected")),
        name=_text(elem, "name"),
    )


def parse_edge(gateway_id: str, root: ET.Element) -> GatewayDescriptor:
    return GatewayDescriptor(
        gateway_id=gateway_id,
        slots=[parse_vnic(v) for v in root.findall("vnics/vnic")],
        appliances_deployed=_parse_bool(
            _text(root, "appliances/deployAppliances", "true")
        ),
        name=_text(root, "name"),
        raw=root,
    )


def parse_pools(root: ET.Element) -> List[PoolEntry]:
    return [
        PoolEntry(
            ip_range=_text(p, "ipRange", ""),
            default_gateway=_text(p, "defaultGateway"),
            subnet_mask=_text(p, "subnetMask"),
            pool_id=_text(p, "poolId"),
        )
        for p in root.findall("ipPools/ipPool")
    ]


def _apply_slot(vnic: ET.Element, slot: InterfaceSlot) -> None:
    _set_text(vnic, "index", str(slot.index))
    if vnic.find("name") is None:
        _set_text(vnic, "name", slot.name or f"vnic{slot.index}")
    if vnic.find("type") is None:
        _set_text(vnic, "type", "internal")

    portgroup = vnic.find("portgroupId")
    if slot.logical_network_id:
        _set_text(vnic, "portgroupId", slot.logical_network_id)
    elif portgroup is not None:
        vnic.remove(portgroup)

    groups = vnic.find("addressGroups")
    if groups is None:
        groups = ET.SubElement(vnic, "addressGroups")
    for old in list(groups):
        groups.remove(old)
    for group in slot.address_groups:
        g = ET.SubElement(groups, "addressGroup")
        ET.SubElement(g, "primaryAddress").text = group.primary_address
        ET.SubElement(g, "subnetMask").text = group.subnet_mask

    _set_text(vnic, "isConnected", "true" if slot.connected else "false")


def render_edge(descriptor: GatewayDescriptor) -> ET.Element:
    """Fold the descriptor's slots and deploy flag back into the edge document"""
    root = descriptor.raw if descriptor.raw is not None else ET.Element("edge")

    vnics = root.find("vnics")
    if vnics is None:
        vnics = ET.SubElement(root, "vnics")
    by_index = {_text(v, "index"): v for v in vnics.findall("vnic")}
    for slot in descriptor.slots:
        vnic = by_index.get(str(slot.index))
        if vnic is None:
            if not slot.connected and not slot.address_groups:
                continue
            vnic = ET.SubElement(vnics, "vnic")
        _apply_slot(vnic, slot)

    appliances = root.find("appliances")
    if appliances is None:
        appliances = ET.SubElement(root, "appliances")
    _set_text(
        appliances,
        "deployAppliances",
        "true" if descriptor.appliances_deployed else "false",
    )
    return root


def render_pool(ip_range: str, default_gateway: str, subnet_mask: str) -> ET.Element:
    pool = ET.Element("ipPool")
    ET.SubElement(pool, "ipRange").text = ip_range
    ET.SubElement(pool, "defaultGateway").text = default_gateway
    ET.SubElement(pool, "subnetMask").text = subnet_mask
    return pool


# ============ NSX CLIENT ============


_STATUS_KINDS = {
    400: ExternalServiceError.INVALID,
    404: ExternalServiceError.NOT_FOUND,
    409: ExternalServiceError.CONFLICT,
    422: ExternalServiceError.INVALID,
}


class NsxGatewayClient:
    """GatewayClient backed by the NSX manager REST API"""

    API_ROOT = "/api/4.0/edges"

    def __init__(
        self,
        manager_uri: str,
        user: str,
        password: str,
        *,
        verify: bool = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.manager_uri = manager_uri.rstrip("/")
        self._client = httpx.Client(
            base_url=self.manager_uri,
            auth=(user, password),
            verify=verify,
            timeout=timeout,
            headers={"Accept": "application/xml", "User-Agent": "edgedhcp"},
            transport=transport,
        )
        logger.info(f"NSX manager client configured for {self.manager_uri}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, context: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text.strip()
            kind = _STATUS_KINDS.get(status, ExternalServiceError.UNAVAILABLE)
            logger.error(f"HTTP {status} on {context}: {detail}")
            raise ExternalServiceError(
                f"{context} failed with HTTP {status}: {detail or e.response.reason_phrase}",
                kind=kind,
                status_code=status,
                detail=detail,
            )
        except httpx.HTTPError as e:
            logger.error(f"{context} failed: {e}")
            raise ExternalServiceError(
                f"{context} failed: NSX manager unreachable ({e})",
                kind=ExternalServiceError.UNAVAILABLE,
            )

    @staticmethod
    def _xml(resp: httpx.Response, context: str) -> ET.Element:
        try:
            return ET.fromstring(resp.content)
        except ET.ParseError as e:
            raise ExternalServiceError(
                f"{context} returned malformed XML: {e}",
                kind=ExternalServiceError.INVALID,
                status_code=resp.status_code,
            )

    @staticmethod
    def _body(elem: ET.Element) -> dict:
        return {
            "content": ET.tostring(elem, encoding="utf-8"),
            "headers": {"Content-Type": "application/xml"},
        }

    def fetch_gateway(self, gateway_id: str) -> GatewayDescriptor:
        context = f"fetch gateway {gateway_id}"
        resp = self._request("GET", f"{self.API_ROOT}/{gateway_id}", context)
        return parse_edge(gateway_id, self._xml(resp, context))

    def write_gateway(self, descriptor: GatewayDescriptor) -> None:
        root = render_edge(descriptor)
        self._request(
            "PUT",
            f"{self.API_ROOT}/{descriptor.gateway_id}",
            f"write gateway {descriptor.gateway_id}",
            **self._body(root),
        )

    def fetch_provisioned_pools(self, gateway_id: str) -> List[PoolEntry]:
        context = f"fetch DHCP pools of {gateway_id}"
        resp = self._request("GET", f"{self.API_ROOT}/{gateway_id}/dhcp/config", context)
        return parse_pools(self._xml(resp, context))

    def add_pool_entry(
        self, gateway_id: str, ip_range: str, default_gateway: str, subnet_mask: str
    ) -> str:
        resp = self._request(
            "POST",
            f"{self.API_ROOT}/{gateway_id}/dhcp/config/ippools",
            f"add DHCP pool {ip_range} on {gateway_id}",
            **self._body(render_pool(ip_range, default_gateway, subnet_mask)),
        )
        # NSX answers 201 with the new pool in the Location header
        location = resp.headers.get("Location", "")
        pool_id = location.rstrip("/").rsplit("/", 1)[-1] if location else resp.text.strip()
        return pool_id

    def delete_pool_entry(self, gateway_id: str, pool_id: str) -> None:
        self._request(
            "DELETE",
            f"{self.API_ROOT}/{gateway_id}/dhcp/config/ippools/{pool_id}",
            f"delete DHCP pool {pool_id} on {gateway_id}",
        )
