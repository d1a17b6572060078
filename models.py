"""
SQLAlchemy ORM Models for applied DHCP state
Raw inputs are stored so previous state is re-resolved on every pass
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


class Gateway(Base):
    """Edge gateway whose DHCP configuration we applied - e.g., edge-12"""

    __tablename__ = "gateways"

    gateway_id = Column(String(100), primary_key=True)
    busy = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    # Relationships
    logical_networks = relationship(
        "LogicalNetwork",
        back_populates="gateway",
        cascade="all, delete-orphan",
        order_by="LogicalNetwork.id",
    )

    def __repr__(self):
        return f"<Gateway {self.gateway_id}>"

    def to_raw(self):
        return [ln.to_raw() for ln in self.logical_networks]


class LogicalNetwork(Base):
    """Logical network attached to one of the gateway's interface slots"""

    __tablename__ = "logical_networks"
    __table_args__ = (
        UniqueConstraint(
            "gateway_id", "logical_network_id", name="uq_logical_network_gateway"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    logical_network_id = Column(String(255), nullable=False)

    # Foreign keys
    gateway_id = Column(String(100), ForeignKey("gateways.gateway_id"), nullable=False)

    # Relationships
    gateway = relationship("Gateway", back_populates="logical_networks")
    subnets = relationship(
        "SubnetConfig",
        back_populates="logical_network",
        cascade="all, delete-orphan",
        order_by="SubnetConfig.id",
    )

    def __repr__(self):
        return f"<LogicalNetwork {self.logical_network_id} on {self.gateway_id}>"

    def to_raw(self):
        return {"id": self.logical_network_id, "subnets": [s.to_raw() for s in self.subnets]}


class SubnetConfig(Base):
    """Subnet exactly as the user declared it"""

    __tablename__ = "subnets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cidr = Column(String(18), nullable=False)
    default_gw = Column(String(15), nullable=True)
    # Comma-separated start-end ranges
    ip_pool = Column(Text, nullable=True)

    # Foreign keys
    logical_network_pk = Column(Integer, ForeignKey("logical_networks.id"), nullable=False)

    # Relationships
    logical_network = relationship("LogicalNetwork", back_populates="subnets")

    def __repr__(self):
        return f"<SubnetConfig {self.cidr}>"

    @property
    def pools(self):
        if not self.ip_pool:
            return []
        return [p for p in self.ip_pool.split(",") if p]

    def to_raw(self):
        raw = {"cidr": self.cidr}
        if self.default_gw:
            raw["default_gw"] = self.default_gw
        if self.pools:
            raw["ip_pool"] = self.pools
        return raw

    @classmethod
    def from_raw(cls, raw: dict) -> "SubnetConfig":
        pools = raw.get("ip_pool") or []
        if isinstance(pools, str):
            pools = [pools]
        return cls(
            cidr=str(raw["cidr"]).strip(),
            default_gw=(str(raw["default_gw"]).strip() if raw.get("default_gw") else None),
            ip_pool=",".join(str(p).strip() for p in pools) or None,
        )
