#!/usr/bin/env python3
"""
🛰️ Edge DHCP CLI
- Declarative logical-network -> subnet assignments per edge gateway
- Interface slots + non-overlapping DHCP pools derived per subnet
- Minimal add/remove reconciliation against the applied state
"""

import functools
from contextlib import contextmanager

import click
import sqlalchemy
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from allocator import DEFAULT_INTERFACE_SLOTS
from config import NsxCfg, database_url, load_config, load_desired_state
from errors import EdgeDHCPError, GatewayBusy
from gateway import NsxGatewayClient
from logconf import get_logger, setup_logging
from models import Base, Gateway, LogicalNetwork, SubnetConfig
from reconcile import ReconciliationEngine, plan_reconciliation
from subnets import resolve_assignments, resolve_subnet

console = Console()
logger = get_logger(__name__)
db = None
_config_file = None


class EdgeDHCPDatabase:
    def __init__(self, config_file=None):
        """
        Initialize the applied-state database from config.
        Priority:
        1. Custom config_file parameter
        2. XDG config: ~/.config/edgedhcp/config.yaml (created if missing)
        3. Legacy: ./config.yaml in current directory
        """
        config, config_path = load_config(config_file)
        self.config = config
        self.config_file = str(config_path)

        self.engine = sqlalchemy.create_engine(database_url(config, config_path))
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)

    def session(self):
        return self.Session()

    @property
    def interface_slots(self) -> int:
        gateway_cfg = self.config.get("gateway") or {}
        return int(gateway_cfg.get("interface_slots") or DEFAULT_INTERFACE_SLOTS)

    def previous_state(self, gateway_id: str) -> list:
        """Raw logical networks last applied to a gateway"""
        with self.session() as session:
            gateway = session.get(Gateway, gateway_id)
            if not gateway:
                return []
            return gateway.to_raw()

    def save_state(self, gateway_id: str, raw_networks: list) -> None:
        """Replace the applied state of a gateway"""
        with self.session() as session:
            gateway = session.get(Gateway, gateway_id)
            if not gateway:
                gateway = Gateway(gateway_id=gateway_id)
                session.add(gateway)

            gateway.logical_networks.clear()
            session.flush()

            merged = {}
            for entry in raw_networks:
                ln_id = str(entry["id"])
                if ln_id not in merged:
                    merged[ln_id] = LogicalNetwork(logical_network_id=ln_id)
                    gateway.logical_networks.append(merged[ln_id])
                for raw in entry.get("subnets") or []:
                    merged[ln_id].subnets.append(SubnetConfig.from_raw(raw))
            session.commit()

    def acquire(self, gateway_id: str) -> None:
        """Mark a gateway busy; one reconciliation pass per gateway at a time"""
        with self.session() as session:
            if not session.get(Gateway, gateway_id):
                try:
                    session.add(Gateway(gateway_id=gateway_id))
                    session.commit()
                except IntegrityError:
                    session.rollback()

            updated = (
                session.query(Gateway)
                .filter_by(gateway_id=gateway_id, busy=False)
                .update({"busy": True})
            )
            session.commit()
            if not updated:
                raise GatewayBusy(
                    f"Gateway '{gateway_id}' is busy with another pass "
                    f"(run 'edgedhcp state unlock {gateway_id}' if it is stale)"
                )

    def release(self, gateway_id: str) -> None:
        with self.session() as session:
            session.query(Gateway).filter_by(gateway_id=gateway_id).update({"busy": False})
            session.commit()

    @contextmanager
    def locked(self, gateway_id: str):
        self.acquire(gateway_id)
        try:
            yield
        finally:
            self.release(gateway_id)

    def forget(self, gateway_id: str) -> bool:
        with self.session() as session:
            gateway = session.get(Gateway, gateway_id)
            if not gateway:
                return False
            session.delete(gateway)
            session.commit()
            return True


def _make_client():
    """Gateway client for the configured NSX manager"""
    nsx = NsxCfg.from_config(db.config)
    nsx.validate()
    return NsxGatewayClient(
        nsx.manager_uri,
        nsx.user,
        nsx.password,
        verify=not nsx.allow_unverified_ssl,
        timeout=nsx.timeout,
    )


def handle_errors(fn):
    """Render expected failures as one line and exit 1"""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except EdgeDHCPError as e:
            console.print(f"❌ {e}", markup=False, highlight=False, soft_wrap=True)
            raise SystemExit(1)

    return wrapper


def _print_subnet(subnet, title=None):
    table = Table("Field", "Value", box=box.ROUNDED, title=title)
    table.add_row("CIDR", subnet.cidr)
    table.add_row("Netmask", subnet.netmask)
    table.add_row("Default gateway", subnet.default_gateway)
    table.add_row("Interface address", subnet.interface_address)
    table.add_row("Pools", "\n".join(subnet.pool_strings) or "(none)")
    console.print(table)


def _print_plan(gateway_id, plan):
    rows = plan.operations()
    if not rows:
        console.print(f"✅ {gateway_id}: no changes")
        return
    table = Table("#", "Action", "Subject", "Detail", box=box.ROUNDED, title=f"Plan for {gateway_id}")
    for i, (action, subject, detail) in enumerate(rows, 1):
        table.add_row(str(i), action, subject, detail)
    console.print(table)
    if plan.unchanged:
        console.print(f"   {len(plan.unchanged)} subnet(s) unchanged")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option("1.0", "--version", "-v")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to config.yaml file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Override logging.level from config",
)
@click.option("--quiet", "-q", is_flag=True, help="No log output on the console")
@handle_errors
def cli(config_file, log_level, quiet):
    """🛰️ Edge DHCP CLI

    Logical networks → interface slots | Subnets → DHCP pools
    """
    global db, _config_file
    _config_file = config_file
    if db is None:
        db = EdgeDHCPDatabase(config_file=config_file)

    log_cfg = db.config.get("logging") or {}
    setup_logging(
        level=log_level or log_cfg.get("level") or "INFO",
        quiet=quiet,
        log_file=log_cfg.get("file"),
    )


@cli.command()
def quickstart():
    """🚀 Quickstart guide"""
    click.echo("""
1️⃣  ./edgedhcp.py resolve 10.0.1.0/24 --gateway 10.0.1.1
2️⃣  cat > edge-12.yaml <<EOF
    gateway_id: edge-12
    logical_networks:
      - id: virtualwire-3
        subnets:
          - cidr: 10.0.1.0/24
            default_gw: 10.0.1.1
            ip_pool: ["10.0.1.10-10.0.1.200"]
    EOF
3️⃣  ./edgedhcp.py plan edge-12.yaml
4️⃣  ./edgedhcp.py apply edge-12.yaml
5️⃣  ./edgedhcp.py show edge-12
    """)


# ============ SUBNETS ============


@cli.command()
@click.argument("cidr")
@click.option("--gateway", "-g", default=None, help="Explicit default gateway")
@click.option("--pool", "-p", multiple=True, help="Pool range start-end (repeatable)")
@handle_errors
def resolve(cidr, gateway, pool):
    """Resolve one subnet: gateway, interface address and pools"""
    subnet = resolve_subnet(cidr, gateway, list(pool))
    _print_subnet(subnet)


# ============ RECONCILIATION ============


@cli.command()
@click.argument("desired_file", type=click.Path(exists=True))
@handle_errors
def plan(desired_file):
    """Show the operations apply would perform (no API calls)"""
    gateway_id, raw = load_desired_state(desired_file)
    desired = resolve_assignments(raw)
    previous = resolve_assignments(db.previous_state(gateway_id))
    _print_plan(gateway_id, plan_reconciliation(previous, desired))


def _run_pass(gateway_id, raw_desired):
    desired = resolve_assignments(raw_desired)
    with db.locked(gateway_id):
        previous = resolve_assignments(db.previous_state(gateway_id))
        the_plan = plan_reconciliation(previous, desired)
        _print_plan(gateway_id, the_plan)
        if the_plan.is_empty():
            return None
        logger.info(f"{gateway_id}: {len(the_plan.operations())} operation(s) planned")

        client = _make_client()
        try:
            engine = ReconciliationEngine(client, interface_slots=db.interface_slots)
            result = engine.apply(gateway_id, the_plan)
        finally:
            close = getattr(client, "close", None)
            if close:
                close()
        db.save_state(gateway_id, raw_desired)
        return result


@cli.command()
@click.argument("desired_file", type=click.Path(exists=True))
@handle_errors
def apply(desired_file):
    """Reconcile a gateway to a desired-state file"""
    gateway_id, raw = load_desired_state(desired_file)
    result = _run_pass(gateway_id, raw)
    if result is None:
        return
    click.echo(
        f"✅ Applied {gateway_id}: "
        f"+{len(result.added_pools)} / -{len(result.deleted_pools)} pools"
        + (", interface table updated" if result.gateway_written else "")
    )
    for note in result.skipped:
        click.echo(f"⚠️  Skipped {note}")


@cli.command()
@click.argument("gateway_id")
@click.confirmation_option(prompt="Remove every managed DHCP pool and interface from this gateway?")
@handle_errors
def destroy(gateway_id):
    """Remove all managed DHCP configuration from a gateway"""
    if not db.previous_state(gateway_id):
        click.echo(f"❌ No applied state for '{gateway_id}'")
        raise SystemExit(1)
    _run_pass(gateway_id, [])
    db.forget(gateway_id)
    click.echo(f"✅ Destroyed DHCP configuration on {gateway_id}")


@cli.command()
@click.argument("gateway_id")
@handle_errors
def show(gateway_id):
    """Read the live interface table and DHCP pools of a gateway"""
    client = _make_client()
    try:
        descriptor = client.fetch_gateway(gateway_id)
        pools = client.fetch_provisioned_pools(gateway_id)
    finally:
        close = getattr(client, "close", None)
        if close:
            close()

    console.print(Panel(f"🛰️ {gateway_id} {descriptor.name or ''}".rstrip(), style="bold cyan"))
    deployed = "yes" if descriptor.appliances_deployed else "no"
    console.print(f"Appliances deployed: {deployed}")

    table = Table("Slot", "Logical network", "Connected", "Address groups", box=box.ROUNDED)
    for slot in sorted(descriptor.slots, key=lambda s: s.index):
        groups = "\n".join(f"{g.primary_address}/{g.subnet_mask}" for g in slot.address_groups)
        table.add_row(
            str(slot.index),
            slot.logical_network_id or "-",
            "✅" if slot.connected else "",
            groups or "-",
        )
    console.print(table)

    if not pools:
        click.echo("No DHCP pools found.")
        return
    table = Table("Pool", "Range", "Gateway", "Netmask", box=box.ROUNDED)
    for p in pools:
        table.add_row(p.pool_id or "?", p.ip_range, p.default_gateway or "", p.subnet_mask or "")
    console.print(table)


# ============ APPLIED STATE ============


@cli.group()
def state():
    """💾 Applied state"""
    pass


@state.command(name="list")
def list_state():
    """List gateways and their applied assignments"""
    with db.session() as session:
        gateways = session.query(Gateway).order_by(Gateway.gateway_id).all()
        if not gateways:
            click.echo("No applied state found.")
            return

        table = Table("Gateway", "Logical network", "CIDR", "Gateway IP", "Pools", box=box.ROUNDED)
        for gw in gateways:
            label = gw.gateway_id + (" (busy)" if gw.busy else "")
            for ln in gw.logical_networks:
                for s in ln.subnets:
                    table.add_row(label, ln.logical_network_id, s.cidr, s.default_gw or "auto", s.ip_pool or "auto")
                    label = ""
            if label:
                table.add_row(label, "-", "-", "-", "-")
        console.print(table)


@state.command()
@click.argument("gateway_id")
def unlock(gateway_id):
    """Clear a stale busy flag left by an interrupted pass"""
    db.release(gateway_id)
    click.echo(f"✅ Unlocked {gateway_id}")


if __name__ == "__main__":
    cli()
