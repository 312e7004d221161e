#!/usr/bin/env python3
"""
Provisioning sequence for a HAOS VM on Proxmox.

Identifier allocation → VM shell → disk import → disk attachment →
optional USB passthrough → start. Every failure after the VM shell exists
and before disk attachment stops and destroys the VM so no half-configured
VM keeps the identifier. Peripheral and start failures are reported only.
"""

import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from haos_vm.models import (
    IdentifierInUseError,
    PeripheralError,
    ProvisioningError,
    ProvisionRequest,
    ProvisionResult,
    ProvisionState,
    StorageProfile,
)
from haos_vm.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

MAX_VMID = 999999999
EFI_DISK_SIZE = "4M"
STOP_TIMEOUT = 30

DESCRIPTION = """<div align='center'>
  <a href='https://www.home-assistant.io/' target='_blank' rel='noopener noreferrer'>
    <img src='https://avatars.githubusercontent.com/u/13844975?s=200&v=4' alt='Home Assistant' style='width:100px;height:100px;'/>
  </a>
  <h2 style='font-size: 20px; margin: 12px 0;'>Home Assistant OS</h2>
  <p style='margin: 12px 0;'>
    <a href='http://homeassistant.local:8123/config/dashboard' target='_blank' rel='noopener noreferrer'>Launch Home Assistant</a>
  </p>
</div>"""


def _volume_token(vmid: int) -> "re.Pattern[str]":
    return re.compile(rf"(^|[-_]){vmid}($|[-_])")


class ProvisioningOrchestrator:
    """Creates the VM and owns its identifier until the disks are attached."""

    def __init__(self, client: ProxmoxClient, start_timeout: int = 180) -> None:
        self.client = client
        self.start_timeout = start_timeout
        self.state = ProvisionState.IDLE
        self.history: List[ProvisionState] = [ProvisionState.IDLE]

    def _transition(self, state: ProvisionState) -> None:
        logger.debug(f"{self.state.value} → {state.value}")
        self.state = state
        self.history.append(state)

    # === Identifier allocation ===

    @staticmethod
    def is_identifier_in_use(vmid: int, used_ids: Set[int], volume_names: List[str]) -> bool:
        """A VMID is taken if a VM/container has it or a volume name carries it as a token."""
        if vmid in used_ids:
            return True
        token = _volume_token(vmid)
        return any(token.search(name) for name in volume_names)

    def check_identifier(self, vmid: int) -> None:
        """
        Raises:
            IdentifierInUseError: If vmid collides with an existing VM, container or volume
        """
        if self.is_identifier_in_use(vmid, self.client.used_ids(), self.client.logical_volume_names()):
            raise IdentifierInUseError(f"ID {vmid} is already in use")

    def allocate_identifier(self, requested: Optional[int] = None) -> int:
        """
        Return a collision-free VMID.

        A requested id is validated and never replaced; otherwise scanning starts
        at the host's next-id suggestion.
        """
        used = self.client.used_ids()
        volumes = self.client.logical_volume_names()

        if requested is not None:
            if self.is_identifier_in_use(requested, used, volumes):
                raise IdentifierInUseError(f"ID {requested} is already in use")
            return requested

        candidate = self.client.next_free_id()
        while self.is_identifier_in_use(candidate, used, volumes):
            candidate += 1
            if candidate > MAX_VMID:
                raise ProvisioningError("No available VMIDs found")
        return candidate

    # === Rollback ===

    @contextmanager
    def allocated(self, vmid: int) -> Iterator[int]:
        """
        Scope owning vmid: any exit by exception (including Ctrl-C) rolls the VM back.

        A VM is only destroyed once this run has created it; if creation itself
        failed, whatever else holds the id is left alone.
        """
        try:
            yield vmid
        except BaseException:
            created = ProvisionState.SHELL_CREATED in self.history
            self._transition(ProvisionState.FAILED)
            if created:
                self.rollback(vmid)
            else:
                logger.warning(f"VM {vmid} was not created by this run, leaving it untouched")
            raise

    def rollback(self, vmid: int) -> None:
        """Stop and destroy vmid if it exists. Errors are logged, never raised."""
        try:
            if self.client.vm_status(vmid) is None:
                logger.info(f"VM {vmid} was never created, nothing to roll back")
                return
            logger.warning(f"↩️  Rolling back VM {vmid}")
            try:
                self.client.stop_vm(vmid)
                self.client.wait_for_status(vmid, "stopped", timeout=STOP_TIMEOUT)
            except Exception as e:
                logger.warning(f"Could not stop VM {vmid}: {e}")
            self.client.destroy_vm(vmid)
            logger.info(f"🗑️  Destroyed VM {vmid}")
        except Exception as e:
            logger.error(f"❌ Rollback of VM {vmid} failed, remove it manually: {e}")

    # === Sequence ===

    def _step(self, what: str, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ProvisioningError:
            raise
        except Exception as e:
            raise ProvisioningError(f"{what} failed: {e}") from e

    @staticmethod
    def shell_options(request: ProvisionRequest) -> Dict[str, Any]:
        """Static VM attributes; disks are attached later."""
        options: Dict[str, Any] = {
            "name": request.hostname,
            "agent": 1,
            "tablet": 0,
            "localtime": 1,
            "bios": "ovmf",
            "cores": request.cores,
            "memory": request.memory_mb,
            "tags": ";".join(request.tags),
            "net0": request.net0(),
            "onboot": 1,
            "ostype": "l26",
            "scsihw": "virtio-scsi-pci",
        }
        if request.cpu_type == "host":
            options["cpu"] = "host"
        if request.machine == "q35":
            options["machine"] = "q35"
        return options

    @staticmethod
    def disk_options(
        request: ProvisionRequest,
        storage: str,
        profile: StorageProfile,
        vmid: int,
        root_volume: Optional[str] = None,
    ) -> Dict[str, Any]:
        """EFI + root disk attachment and boot order."""
        efitype = ",efitype=4m" if request.machine == "i440fx" or profile.force_efitype else ""
        cache = "cache=writethrough," if request.disk_cache == "writethrough" else ""
        root = root_volume or profile.disk_ref(storage, vmid, 1)
        return {
            "efidisk0": f"{profile.disk_ref(storage, vmid, 0)}{efitype}",
            "scsi0": f"{root},{cache}{profile.thin_options}size={request.disk_size}",
            "boot": "order=scsi0",
            "description": DESCRIPTION,
        }

    def attach_peripheral(self, vmid: int, request: ProvisionRequest) -> None:
        """Pass a host USB device through. Raises PeripheralError on failure."""
        slot = f"usb{request.usb_slot}"
        logger.info(f"🔌 Attaching USB device {request.usb_device} as {slot}")
        try:
            self.client.set_config(vmid, **{slot: f"host={request.usb_device}"})
        except Exception as e:
            raise PeripheralError(f"Could not attach USB device {request.usb_device}: {e}") from e

    def provision(
        self, request: ProvisionRequest, image_path: Path, storage: str, profile: StorageProfile
    ) -> ProvisionResult:
        """
        Run the full sequence for one request.

        Raises:
            IdentifierInUseError: Requested VMID is taken (nothing created)
            ProvisioningError: A control-plane call failed before the disks were
                attached; the VM has been rolled back
        """
        vmid = self.allocate_identifier(request.vmid)
        self._transition(ProvisionState.IDENTIFIER_ALLOCATED)
        logger.info(f"🆕 Creating VM {request.hostname!r} (vmid={vmid}) on {storage} [{profile.backend_type}]")

        with self.allocated(vmid):
            self._step("VM creation", self.client.create_vm, vmid, **self.shell_options(request))
            self._transition(ProvisionState.SHELL_CREATED)

            self._step(
                "EFI disk allocation",
                self.client.alloc_volume,
                storage,
                vmid,
                profile.disk_name(vmid, 0),
                EFI_DISK_SIZE,
            )
            root_volume = self._step(
                "Disk import", self.client.import_disk, vmid, str(image_path), storage, profile.import_format
            )
            self._transition(ProvisionState.DISK_IMPORTED)
            logger.info(f"✅ Imported HAOS disk image into {storage}")

            self._step(
                "Disk attachment",
                self.client.set_config,
                vmid,
                **self.disk_options(request, storage, profile, vmid, root_volume),
            )
            self._transition(ProvisionState.DISK_ATTACHED)
            logger.info(f"✅ Attached EFI and root disk to VM {vmid}")

        result = ProvisionResult(
            vmid=vmid,
            hostname=request.hostname,
            storage=storage,
            state=self.state,
            profile=profile,
        )

        if request.usb_device:
            try:
                self.attach_peripheral(vmid, request)
            except PeripheralError as e:
                logger.warning(f"⚠️  {e}")
                result.peripheral_error = str(e)
        self._transition(ProvisionState.PERIPHERALS_ATTACHED)

        if request.start_vm:
            self._start(vmid, result)

        self._transition(ProvisionState.COMPLETED)
        result.state = self.state
        logger.info(f"✅ Created Home Assistant OS VM {request.hostname!r} (vmid={vmid})")
        return result

    def _start(self, vmid: int, result: ProvisionResult) -> None:
        logger.info(f"▶️  Starting VM {vmid}")
        try:
            self.client.start_vm(vmid)
            running = self.client.wait_for_status(vmid, "running", timeout=self.start_timeout)
        except Exception as e:
            logger.warning(f"⚠️  VM {vmid} failed to start: {e}")
            result.start_error = f"Start failed: {e}"
            return

        if running:
            result.started = True
            logger.info(f"✅ VM {vmid} is running")
        else:
            result.start_error = f"VM {vmid} did not report running within {self.start_timeout}s"
            logger.warning(f"⚠️  {result.start_error}")
