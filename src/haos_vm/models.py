"""Data models and error taxonomy for HAOS VM provisioning."""

import random
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

VERSION_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)+([a-z0-9.\-]+)?$")

_HOSTNAME = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_BRIDGE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,15}$")
_STORAGE_ID = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")
_MAC = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
_DISK_SIZE = re.compile(r"^([0-9]+)G?$")
# vendor:product id (1a86:55d4) or bus-port (1-2, 1-2.3)
_USB_DEVICE = re.compile(r"^([0-9A-Fa-f]{4}:[0-9A-Fa-f]{4}|[0-9]+-[0-9]+(\.[0-9]+)*)$")
_TAG = re.compile(r"^[a-z0-9_][a-z0-9_.+-]*$")


class Channel(Enum):
    """Home Assistant OS release channels."""

    STABLE = "stable"
    BETA = "beta"
    DEV = "dev"

    @property
    def mandatory(self) -> bool:
        """Stable must resolve for a run to proceed."""
        return self is Channel.STABLE


class ProvisionState(Enum):
    """Orchestrator progress through the provisioning sequence."""

    IDLE = "idle"
    IDENTIFIER_ALLOCATED = "identifier_allocated"
    SHELL_CREATED = "shell_created"
    DISK_IMPORTED = "disk_imported"
    DISK_ATTACHED = "disk_attached"
    PERIPHERALS_ATTACHED = "peripherals_attached"
    COMPLETED = "completed"
    FAILED = "failed"


class HaosVMError(Exception):
    """Base exception for HAOS VM provisioning errors."""

    pass


class ConfigurationError(HaosVMError):
    """Raised when a provisioning request or setting is invalid."""

    pass


class ResolutionError(HaosVMError):
    """Raised when channel metadata is unreachable or malformed."""

    pass


class DownloadError(HaosVMError):
    """Raised when the artifact cannot be downloaded."""

    pass


class IntegrityError(HaosVMError):
    """Raised when a downloaded artifact fails the xz integrity check."""

    pass


class ExtractionError(HaosVMError):
    """Raised when decompressing the artifact fails."""

    pass


class ProvisioningError(HaosVMError):
    """Raised when a control-plane operation fails."""

    pass


class IdentifierInUseError(ProvisioningError):
    """Raised when a requested VM identifier is already taken."""

    pass


class PeripheralError(HaosVMError):
    """Raised when attaching a passthrough device fails. Never fatal."""

    pass


@dataclass(frozen=True)
class ReleaseVersions:
    """Resolved OVA version per channel for one run."""

    stable: str
    beta: Optional[str] = None
    dev: Optional[str] = None

    def get(self, channel: Channel) -> Optional[str]:
        return getattr(self, channel.value)

    def version_for(self, channel: Channel) -> str:
        """Return the version for a channel, failing if it was not resolved."""
        version = self.get(channel)
        if not version:
            raise ResolutionError(f"No version available for selected channel: {channel.value}")
        return version


@dataclass(frozen=True)
class ArtifactDescriptor:
    """A downloadable HAOS image for one channel and version."""

    channel: Channel
    version: str
    url: str
    cache_path: Path

    @property
    def basename(self) -> str:
        return self.cache_path.name

    @property
    def image_name(self) -> str:
        """Filename of the decompressed image."""
        name = self.basename
        return name[: -len(".xz")] if name.endswith(".xz") else f"{name}.img"


@dataclass(frozen=True)
class StorageProfile:
    """Disk addressing and provisioning options for one storage backend type."""

    backend_type: str
    disk_extension: str = ""
    path_prefix: bool = False
    import_format: Optional[str] = "raw"
    thin_options: str = ""
    force_efitype: bool = False

    @property
    def thin_provisioned(self) -> bool:
        return bool(self.thin_options)

    def disk_name(self, vmid: int, index: int) -> str:
        return f"vm-{vmid}-disk-{index}{self.disk_extension}"

    def disk_ref(self, storage: str, vmid: int, index: int) -> str:
        """Volume reference as the storage expects it, e.g. local:108/vm-108-disk-0.raw."""
        prefix = f"{vmid}/" if self.path_prefix else ""
        return f"{storage}:{prefix}{self.disk_name(vmid, index)}"


@dataclass(frozen=True)
class StoragePool:
    """An image-capable storage pool reported by the host."""

    name: str
    backend_type: str
    available_bytes: int = 0
    total_bytes: int = 0

    @property
    def available_gib(self) -> float:
        return self.available_bytes / (1024**3)


def generate_mac() -> str:
    """Random locally administered unicast MAC address (02:XX:XX:XX:XX:XX)."""
    octets = [random.randint(0, 255) for _ in range(5)]
    return "02:" + ":".join(f"{o:02X}" for o in octets)


@dataclass(frozen=True)
class ProvisionRequest:
    """Complete, validated configuration for one provisioning run."""

    channel: Channel = Channel.STABLE
    vmid: Optional[int] = None
    hostname: str = ""
    cores: int = 2
    memory_mb: int = 4096
    disk_size: str = "32G"
    bridge: str = "vmbr0"
    mac: str = field(default_factory=generate_mac)
    vlan: Optional[int] = None
    mtu: Optional[int] = None
    storage: Optional[str] = None
    usb_device: Optional[str] = None
    usb_slot: int = 0
    start_vm: bool = True
    machine: str = "i440fx"
    cpu_type: str = "host"
    disk_cache: str = "writethrough"
    keep_cache: bool = True
    tags: Tuple[str, ...] = ("home-assistant",)

    def __post_init__(self) -> None:
        if isinstance(self.channel, str):
            object.__setattr__(self, "channel", _parse_channel(self.channel))
        if not self.hostname:
            object.__setattr__(self, "hostname", f"haos-{self.channel.value}")
        object.__setattr__(self, "hostname", self.hostname.lower().replace(" ", ""))
        object.__setattr__(self, "disk_size", _normalize_disk_size(self.disk_size))
        object.__setattr__(self, "mac", self.mac.upper())
        object.__setattr__(self, "tags", tuple(self.tags))
        self._validate()

    def _validate(self) -> None:
        if self.vmid is not None and not 100 <= self.vmid <= 999999999:
            raise ConfigurationError(f"VMID must be between 100 and 999999999, got {self.vmid}")
        if not _HOSTNAME.match(self.hostname):
            raise ConfigurationError(f"Invalid hostname: {self.hostname!r}")
        if self.cores < 1:
            raise ConfigurationError("At least one CPU core is required")
        if self.memory_mb < 512:
            raise ConfigurationError("At least 512 MiB of RAM is required")
        if not _BRIDGE.match(self.bridge):
            raise ConfigurationError(f"Invalid bridge name: {self.bridge!r}")
        if not _MAC.match(self.mac):
            raise ConfigurationError(f"Invalid MAC address: {self.mac!r}")
        if self.vlan is not None and not 1 <= self.vlan <= 4094:
            raise ConfigurationError(f"VLAN tag must be between 1 and 4094, got {self.vlan}")
        if self.mtu is not None and not 576 <= self.mtu <= 65520:
            raise ConfigurationError(f"MTU must be between 576 and 65520, got {self.mtu}")
        if self.storage is not None and not _STORAGE_ID.match(self.storage):
            raise ConfigurationError(f"Invalid storage identifier: {self.storage!r}")
        if self.usb_device is not None and not _USB_DEVICE.match(self.usb_device):
            raise ConfigurationError(f"Invalid USB device (expected vendor:product or bus-port): {self.usb_device!r}")
        if not 0 <= self.usb_slot <= 4:
            raise ConfigurationError(f"USB slot must be between 0 and 4, got {self.usb_slot}")
        if self.machine not in ("i440fx", "q35"):
            raise ConfigurationError(f"Unsupported machine type: {self.machine!r}")
        if self.cpu_type not in ("host", "kvm64"):
            raise ConfigurationError(f"Unsupported CPU model: {self.cpu_type!r}")
        if self.disk_cache not in ("writethrough", "none"):
            raise ConfigurationError(f"Unsupported disk cache mode: {self.disk_cache!r}")
        for tag in self.tags:
            if not _TAG.match(tag):
                raise ConfigurationError(f"Invalid tag: {tag!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisionRequest":
        """Build a request from a mapping (e.g. a parsed YAML file)."""
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown request fields: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in data.items() if v is not None}
        if "tags" in values and isinstance(values["tags"], str):
            values["tags"] = tuple(t.strip() for t in values["tags"].split(",") if t.strip())
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid request: {e}")

    def net0(self) -> str:
        """Network device definition for the VM shell."""
        value = f"virtio,bridge={self.bridge},macaddr={self.mac}"
        if self.vlan is not None:
            value += f",tag={self.vlan}"
        if self.mtu is not None:
            value += f",mtu={self.mtu}"
        return value


def _parse_channel(value: str) -> Channel:
    try:
        return Channel(value.lower())
    except ValueError:
        raise ConfigurationError(f"Unknown channel {value!r}; choose stable, beta or dev")


def _normalize_disk_size(value: Any) -> str:
    raw = str(value).replace(" ", "")
    match = _DISK_SIZE.match(raw)
    if not match or int(match.group(1)) == 0:
        raise ConfigurationError(f"Invalid disk size {value!r}; use a number of GiB such as 32 or 32G")
    return f"{int(match.group(1))}G"


@dataclass
class ProvisionResult:
    """Outcome of a provisioning run."""

    vmid: int
    hostname: str
    storage: str
    state: ProvisionState
    profile: Optional[StorageProfile] = None
    started: bool = False
    peripheral_error: Optional[str] = None
    start_error: Optional[str] = None

    @property
    def warnings(self) -> Tuple[str, ...]:
        return tuple(w for w in (self.peripheral_error, self.start_error) if w)
