"""Shared test fixtures and configuration for haos_vm tests."""

import lzma
from pathlib import Path
from typing import Any, Dict, List
from unittest import mock

import pytest

from haos_vm.host_commands import LocalCommandRunner
from haos_vm.models import ProvisionRequest
from haos_vm.proxmox_api import ProxmoxClient


@pytest.fixture
def mock_proxmox():
    """Mock proxmoxer API object with an empty cluster."""
    proxmox = mock.MagicMock()

    proxmox.cluster.nextid.get.return_value = "100"
    proxmox.cluster.resources.get.return_value = []
    proxmox.nodes.return_value.storage.get.return_value = []
    proxmox.nodes.return_value.storage.return_value.status.get.return_value = {"type": "lvmthin"}
    proxmox.nodes.return_value.qemu.return_value.status.current.get.return_value = {"status": "stopped"}

    yield proxmox


@pytest.fixture
def mock_runner():
    """Host command runner that records commands instead of running them."""
    runner = mock.MagicMock(spec=LocalCommandRunner)
    runner.run.return_value = ""
    runner.put_file.side_effect = lambda local_path, remote_path: local_path
    return runner


@pytest.fixture
def client(mock_proxmox, mock_runner):
    """ProxmoxClient wired to the mocks above."""
    return ProxmoxClient(mock_proxmox, "pve", mock_runner)


@pytest.fixture
def image_payload() -> bytes:
    """Stand-in for a decompressed disk image."""
    return b"HAOS-DISK-IMAGE" * 4096


@pytest.fixture
def xz_file(tmp_path, image_payload) -> Path:
    """A valid .xz artifact on disk."""
    path = tmp_path / "haos_ova-14.2.qcow2.xz"
    path.write_bytes(lzma.compress(image_payload, format=lzma.FORMAT_XZ))
    return path


@pytest.fixture
def request_defaults() -> ProvisionRequest:
    """A stable-channel request with a fixed MAC."""
    return ProvisionRequest(mac="02:11:22:33:44:55", storage="local-lvm")


@pytest.fixture
def sample_storage_entries() -> List[Dict[str, Any]]:
    """Storage inventory as returned by /nodes/{node}/storage?content=images."""
    return [
        {"storage": "local-lvm", "type": "lvmthin", "active": 1, "enabled": 1,
         "avail": 100 * 1024**3, "total": 200 * 1024**3},
        {"storage": "local", "type": "dir", "active": 1, "enabled": 1,
         "avail": 50 * 1024**3, "total": 100 * 1024**3},
        {"storage": "offline-nfs", "type": "nfs", "active": 0, "enabled": 1,
         "avail": 0, "total": 0},
    ]


@pytest.fixture
def mock_ssh_client():
    """Mock paramiko SSH client for remote host operations."""
    with mock.patch('haos_vm.host_commands.paramiko.SSHClient') as mock_ssh:
        ssh = mock.MagicMock()
        mock_ssh.return_value = ssh

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value = b"command output"
        stderr.read.return_value = b""
        stdout.channel.recv_exit_status.return_value = 0

        ssh.exec_command.return_value = (None, stdout, stderr)

        yield ssh
