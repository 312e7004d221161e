#!/usr/bin/env python3
"""
Command-line interface for Home Assistant OS VM provisioning on Proxmox VE.

    haos-vm create --storage local-lvm --usb 1a86:55d4
    haos-vm versions
    haos-vm storages
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, TransferSpeedColumn
from rich.table import Table

from haos_vm.config import Config
from haos_vm.main import build_components, load_request, provision
from haos_vm.models import Channel, HaosVMError, ProvisionRequest, ProvisionResult
from haos_vm.storage import StorageAdapter
from haos_vm.version_resolver import VersionResolver

# Initialize CLI app and console
app = typer.Typer(
    name="haos-vm",
    help="Create Home Assistant OS VMs on Proxmox VE",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@contextmanager
def rich_progress(description: str) -> Iterator[Callable[..., None]]:
    """Transient spinner/bar for one long-running phase; gone before the next output."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=None)

        def advance(done: int, total: Optional[int] = None) -> None:
            progress.update(task, completed=done, total=total)

        yield advance
    console.print(f"✅ {description}")


def _show_result(result: ProvisionResult) -> None:
    table = Table(title=f"VM Details: {result.hostname}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("VMID", str(result.vmid))
    table.add_row("Storage", result.storage)
    if result.profile:
        table.add_row("Backend", result.profile.backend_type)
        table.add_row("Thin provisioning", "yes" if result.profile.thin_provisioned else "no")
    table.add_row("Started", "yes" if result.started else "no")
    table.add_row("State", result.state.value)
    console.print(table)

    for warning in result.warnings:
        console.print(f"⚠️  {warning}")


@app.command("create")
def create_vm(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML file with request fields (CLI options override it)"
    ),
    channel: Optional[str] = typer.Option(None, help="Release channel: stable, beta or dev"),
    vmid: Optional[int] = typer.Option(None, help="VM ID (default: next free ID)"),
    hostname: Optional[str] = typer.Option(None, help="VM name (default: haos-<channel>)"),
    storage: Optional[str] = typer.Option(None, help="Storage pool for the VM disks"),
    cores: Optional[int] = typer.Option(None, help="CPU cores"),
    memory: Optional[int] = typer.Option(None, help="RAM in MiB"),
    disk_size: Optional[str] = typer.Option(None, help="Disk size in GiB, e.g. 32 or 32G"),
    bridge: Optional[str] = typer.Option(None, help="Existing bridge, e.g. vmbr0"),
    mac: Optional[str] = typer.Option(None, help="MAC address (default: random 02:XX:..)"),
    vlan: Optional[int] = typer.Option(None, help="VLAN tag"),
    mtu: Optional[int] = typer.Option(None, help="Interface MTU"),
    machine: Optional[str] = typer.Option(None, help="Machine type: i440fx or q35"),
    cpu_type: Optional[str] = typer.Option(None, help="CPU model: host or kvm64"),
    disk_cache: Optional[str] = typer.Option(None, help="Disk cache: writethrough or none"),
    usb: Optional[str] = typer.Option(
        None, help="Host USB device to pass through, as vendor:product (1a86:55d4) or bus-port (1-2)"
    ),
    start_vm: Optional[bool] = typer.Option(None, "--start/--no-start", help="Start the VM when done"),
    keep_cache: Optional[bool] = typer.Option(
        None, "--keep-cache/--discard-cache", help="Keep the downloaded image for future VMs"
    ),
    tags: Optional[str] = typer.Option(None, help="Comma-separated VM tags"),
    backend: Optional[str] = typer.Option(None, help="Proxmox access: local, ssh or https"),
    node: Optional[str] = typer.Option(None, help="Proxmox node name"),
) -> None:
    """Create a Home Assistant OS VM."""
    overrides = {
        "channel": channel,
        "vmid": vmid,
        "hostname": hostname,
        "storage": storage,
        "cores": cores,
        "memory_mb": memory,
        "disk_size": disk_size,
        "bridge": bridge,
        "mac": mac,
        "vlan": vlan,
        "mtu": mtu,
        "machine": machine,
        "cpu_type": cpu_type,
        "disk_cache": disk_cache,
        "usb_device": usb,
        "start_vm": start_vm,
        "keep_cache": keep_cache,
        "tags": tags,
    }

    try:
        request_file = str(config_file) if config_file else Config.get_request_file()
        if request_file:
            request = load_request(request_file, **overrides)
        else:
            request = ProvisionRequest.from_dict(overrides)

        console.print(f"🚀 Creating Home Assistant OS VM {request.hostname!r} ({request.channel.value})")
        components = build_components(backend=backend, node=node)
        result = provision(request, components, progress=rich_progress)
    except HaosVMError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("⚠  User exited")
        raise typer.Exit(1)
    except Exception as e:
        logger.exception("Unexpected provisioning failure")
        console.print(f"❌ Provisioning failed: {e}")
        raise typer.Exit(1)

    _show_result(result)
    console.print("✅ Completed successfully! Continue with Home Assistant onboarding in your browser.")


@app.command("versions")
def show_versions() -> None:
    """Show the current HAOS version for each channel."""
    resolver = VersionResolver(Config.METADATA_PRIMARY, Config.METADATA_FALLBACK, timeout=Config.METADATA_TIMEOUT)
    try:
        versions = resolver.resolve_all()
    except HaosVMError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    table = Table(title="Home Assistant OS Versions")
    table.add_column("Channel", style="cyan")
    table.add_column("Version", style="green")
    for ch in Channel:
        table.add_row(ch.value, versions.get(ch) or "unavailable")
    console.print(table)


@app.command("storages")
def list_storages(
    backend: Optional[str] = typer.Option(None, help="Proxmox access: local, ssh or https"),
    node: Optional[str] = typer.Option(None, help="Proxmox node name"),
) -> None:
    """List storage pools that can hold VM disks."""
    try:
        client = build_components(backend=backend, node=node).client
        pools = StorageAdapter.parse_storage_pools(client.list_image_storages())
    except HaosVMError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    if not pools:
        console.print("No images-capable storage found.")
        raise typer.Exit(1)

    table = Table(title="Storage Pools (content=images)")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Free", style="green")
    table.add_column("Thin", style="yellow")
    for pool in pools:
        profile = StorageAdapter.profile_for(pool.backend_type)
        table.add_row(
            pool.name,
            pool.backend_type,
            f"{pool.available_gib:.2f} GiB",
            "yes" if profile.thin_provisioned else "no",
        )
    console.print(table)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output from haos_vm only"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging for all libraries")
) -> None:
    """
    Home Assistant OS VM provisioning

    Resolves the HAOS image for a channel, caches and verifies it, and creates
    the VM with storage-appropriate disk settings.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose:
        logging.getLogger("haos_vm").setLevel(logging.DEBUG)


if __name__ == "__main__":
    app()
