"""
Storage backend profiles for HAOS disk placement.

Directory-backed storages need the VM id as a subdirectory and an explicit
.raw extension. Copy-on-write and snapshot-capable backends use flat volume
names. Thin flags are only passed where the backend allocates on write.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from haos_vm.models import ConfigurationError, StoragePool, StorageProfile

logger = logging.getLogger(__name__)

THIN_OPTIONS = "discard=on,ssd=1,"

PROFILES: Dict[str, StorageProfile] = {
    "nfs": StorageProfile(backend_type="nfs", disk_extension=".raw", path_prefix=True, import_format="raw"),
    "dir": StorageProfile(backend_type="dir", disk_extension=".raw", path_prefix=True, import_format="raw"),
    "btrfs": StorageProfile(backend_type="btrfs", import_format="raw", force_efitype=True),
    "zfspool": StorageProfile(
        backend_type="zfspool", import_format="raw", thin_options=THIN_OPTIONS, force_efitype=True
    ),
    "lvmthin": StorageProfile(backend_type="lvmthin", import_format=None, thin_options=THIN_OPTIONS),
}


class StorageAdapter:
    """Pure lookup from backend type to disk addressing profile."""

    @staticmethod
    def profile_for(backend_type: str) -> StorageProfile:
        """Return the profile for a backend type; unknown types get a flat, thick, raw profile."""
        key = (backend_type or "").strip().lower()
        profile = PROFILES.get(key)
        if profile is None:
            return StorageProfile(backend_type=key or "unknown", import_format="raw")
        return profile

    @staticmethod
    def parse_storage_pools(entries: Iterable[Dict[str, Any]]) -> List[StoragePool]:
        """
        Convert the host's storage inventory into StoragePool objects.

        Args:
            entries: Items from /nodes/{node}/storage?content=images

        Returns:
            Active, enabled pools sorted by name
        """
        pools = []
        for entry in entries:
            if not entry.get("storage"):
                continue
            if int(entry.get("active", 1)) != 1 or int(entry.get("enabled", 1)) != 1:
                continue
            pools.append(
                StoragePool(
                    name=entry["storage"],
                    backend_type=entry.get("type", "unknown"),
                    available_bytes=int(entry.get("avail", 0) or 0),
                    total_bytes=int(entry.get("total", 0) or 0),
                )
            )
        return sorted(pools, key=lambda p: p.name)

    @staticmethod
    def select_storage(pools: List[StoragePool], requested: Optional[str] = None) -> StoragePool:
        """
        Pick the pool to provision on.

        Raises:
            ConfigurationError: No image-capable pool exists, the requested one is
                not available, or several exist and none was requested
        """
        if not pools:
            raise ConfigurationError("Unable to detect a valid storage location (content=images)")

        if requested:
            for pool in pools:
                if pool.name == requested:
                    return pool
            names = ", ".join(p.name for p in pools)
            raise ConfigurationError(f"Storage {requested!r} is not an images-capable pool (available: {names})")

        if len(pools) == 1:
            logger.info(f"Only one images-capable pool, using {pools[0].name}")
            return pools[0]

        names = ", ".join(p.name for p in pools)
        raise ConfigurationError(f"Several storage pools available ({names}); choose one with --storage")
