import logging
import re
import time
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Set, Union

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from haos_vm.host_commands import CommandError, HostCommand, LocalCommandRunner, SSHCommandRunner
from haos_vm.models import ConfigurationError

logger = logging.getLogger(__name__)

Runner = Union[LocalCommandRunner, SSHCommandRunner]

_IMPORTED_VOLUME = re.compile(r"unused\d+:([^'\s]+)")


class ProxmoxClient:
    """Proxmox control plane: API calls through proxmoxer, disk import through host commands."""

    def __init__(self, proxmox: Any, node: str, runner: Runner, remote_image_dir: Optional[str] = None) -> None:
        self.proxmox = proxmox
        self.node = node
        self.runner = runner
        self.remote_image_dir = remote_image_dir

    @classmethod
    def connect(
        cls,
        backend: str,
        node: str,
        host: Optional[str] = None,
        api_token: Optional[str] = None,
        ssh_user: str = "root",
        ssh_key: Optional[str] = None,
        verify_ssl: bool = False,
        remote_image_dir: Optional[str] = None,
    ) -> "ProxmoxClient":
        """
        Build a client for the chosen access mode.

        Args:
            backend: 'local' when running on the node, 'ssh' or 'https' otherwise
            node: Proxmox node name VMs are created on
            host: Node address for ssh/https
            api_token: 'user!token=secret', required for https
        """
        if backend == "local":
            proxmox = ProxmoxAPI(backend="local", service="PVE")
            return cls(proxmox, node, LocalCommandRunner())

        if not host:
            raise ConfigurationError(f"PVE_HOST is required for the {backend!r} backend")
        runner = SSHCommandRunner(host, user=ssh_user, key_path=ssh_key)

        if backend == "ssh":
            proxmox = ProxmoxAPI(
                host, user=ssh_user, backend="ssh_paramiko", private_key_file=ssh_key, service="PVE"
            )
        elif backend == "https":
            if api_token is None:
                raise ConfigurationError("API_TOKEN environment variable is not set")
            try:
                user_token, token_value = api_token.split("=", 1)
                user, token_name = user_token.split("!", 1)
            except ValueError:
                raise ConfigurationError("API_TOKEN must look like user@realm!tokenid=secret")
            proxmox = ProxmoxAPI(
                host, user=user, token_name=token_name, token_value=token_value, verify_ssl=verify_ssl
            )
        else:
            raise ConfigurationError(f"Unknown Proxmox backend {backend!r}; use local, ssh or https")

        return cls(proxmox, node, runner, remote_image_dir=remote_image_dir)

    # === Identifiers ===

    def next_free_id(self) -> int:
        """Host's suggestion for the next unused VMID."""
        return int(self.proxmox.cluster.nextid.get())

    def used_ids(self) -> Set[int]:
        """VMIDs taken by VMs and containers anywhere in the cluster."""
        return {int(r["vmid"]) for r in self.proxmox.cluster.resources.get(type="vm") if "vmid" in r}

    def logical_volume_names(self) -> List[str]:
        """Names of all LVM logical volumes on the node (empty if LVM is not in use)."""
        try:
            output = self.runner.run(HostCommand.list_logical_volumes())
        except CommandError as e:
            logger.debug(f"Could not list logical volumes: {e}")
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    # === Storage ===

    def list_image_storages(self) -> List[Dict[str, Any]]:
        """Storage pools on the node that accept VM disk images."""
        return self.proxmox.nodes(self.node).storage.get(content="images")  # type: ignore[no-any-return]

    def storage_type(self, storage: str) -> str:
        """Backend type of a storage pool (dir, zfspool, lvmthin, ...)."""
        status = self.proxmox.nodes(self.node).storage(storage).status.get()
        return str(status.get("type", ""))

    def alloc_volume(self, storage: str, vmid: int, filename: str, size: str) -> str:
        """Allocate a volume owned by vmid and return its volume id."""
        return self.proxmox.nodes(self.node).storage(storage).content.create(  # type: ignore[no-any-return]
            vmid=vmid, filename=filename, size=size
        )

    def import_disk(self, vmid: int, image_path: str, storage: str, fmt: Optional[str] = None) -> Optional[str]:
        """
        Import a disk image into storage as an unused disk of vmid.

        The image is uploaded first when the node is remote. Returns the imported
        volume id when qm reports it.
        """
        remote_path = image_path
        if self.remote_image_dir is not None:
            remote_path = str(PurePosixPath(self.remote_image_dir) / PurePosixPath(image_path).name)
        staged = self.runner.put_file(image_path, remote_path)

        logger.info(f"💾 Importing {PurePosixPath(image_path).name} → {storage} (vmid={vmid})")
        try:
            output = self.runner.run(HostCommand.import_disk(vmid, staged, storage, fmt))
        finally:
            if staged != image_path:
                self.runner.remove_file(staged)

        match = _IMPORTED_VOLUME.search(output or "")
        return match.group(1) if match else None

    # === VM lifecycle ===

    def create_vm(self, vmid: int, **options: Any) -> Any:
        return self.proxmox.nodes(self.node).qemu.create(vmid=vmid, **options)

    def set_config(self, vmid: int, **options: Any) -> Any:
        return self.proxmox.nodes(self.node).qemu(vmid).config.post(**options)

    def vm_status(self, vmid: int) -> Optional[str]:
        """Current status ('running', 'stopped', ...) or None if the VM does not exist."""
        try:
            status = self.proxmox.nodes(self.node).qemu(vmid).status.current.get()
        except ResourceException:
            return None
        return status.get("status")

    def start_vm(self, vmid: int) -> Any:
        return self.proxmox.nodes(self.node).qemu(vmid).status.start.post()

    def stop_vm(self, vmid: int) -> Any:
        return self.proxmox.nodes(self.node).qemu(vmid).status.stop.post()

    def destroy_vm(self, vmid: int) -> Any:
        """Delete the VM together with every disk carrying its id, attached or not."""
        return self.proxmox.nodes(self.node).qemu(vmid).delete(**{"purge": 1, "destroy-unreferenced-disks": 1})

    def wait_for_status(self, vmid: int, expected: str, timeout: int, interval: int = 2) -> bool:
        """Poll until the VM reports the expected status. Returns False on timeout."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.vm_status(vmid) == expected:
                return True
            time.sleep(interval)
        return False
