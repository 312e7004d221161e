"""
Structured host commands and the runners that execute them.

Commands are built as argv tuples and validated before they reach a process
or an SSH channel; nothing is assembled by string concatenation.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Tuple

import paramiko

from haos_vm.models import HaosVMError

logger = logging.getLogger(__name__)

ALLOWED_PROGRAMS = frozenset({"qm", "lvs"})


class CommandError(HaosVMError):
    """Raised when a host command exits non-zero or cannot be run."""

    def __init__(self, argv: Tuple[str, ...], returncode: Optional[int], stderr: str = "") -> None:
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"Command {' '.join(argv)!r} failed (exit {returncode}){detail}")


@dataclass(frozen=True)
class HostCommand:
    """A single program invocation on the Proxmox host."""

    program: str
    args: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.program not in ALLOWED_PROGRAMS:
            raise ValueError(f"Program {self.program!r} is not an allowed host command")
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        for arg in self.args:
            if not arg or "\x00" in arg or "\n" in arg:
                raise ValueError(f"Invalid argument for {self.program}: {arg!r}")

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.program,) + self.args

    def render(self) -> str:
        """Quoted form for transports that take a command line (SSH exec)."""
        return shlex.join(self.argv)

    @classmethod
    def import_disk(cls, vmid: int, image_path: str, storage: str, fmt: Optional[str] = None) -> "HostCommand":
        args = ["importdisk", str(vmid), image_path, storage]
        if fmt:
            args += ["--format", fmt]
        return cls("qm", tuple(args))

    @classmethod
    def list_logical_volumes(cls) -> "HostCommand":
        return cls("lvs", ("--noheadings", "-o", "lv_name"))


class LocalCommandRunner:
    """Runs host commands on this machine (the Proxmox host itself)."""

    def __init__(self, timeout: Optional[int] = None) -> None:
        self.timeout = timeout

    def run(self, command: HostCommand) -> str:
        logger.debug(f"Running {command.render()}")
        try:
            result = subprocess.run(
                list(command.argv),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise CommandError(command.argv, None, f"{command.program} not found")
        except subprocess.TimeoutExpired:
            raise CommandError(command.argv, None, f"timed out after {self.timeout}s")

        if result.returncode != 0:
            raise CommandError(command.argv, result.returncode, result.stderr.strip())
        return result.stdout

    def put_file(self, local_path: str, remote_path: str) -> str:
        """Local runs share the filesystem with the host; nothing to copy."""
        return local_path

    def remove_file(self, remote_path: str) -> None:
        pass


class SSHCommandRunner:
    """Runs host commands on a remote Proxmox node over SSH."""

    def __init__(self, host: str, user: str = "root", key_path: Optional[str] = None) -> None:
        self.host = host
        self.user = user
        self.key_path = os.path.expanduser(key_path or "~/.ssh/id_rsa")

    def _connect(self) -> paramiko.SSHClient:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=self.host, username=self.user, key_filename=self.key_path)
        return ssh

    def run(self, command: HostCommand) -> str:
        logger.debug(f"[{self.host}]$ {command.render()}")
        ssh = self._connect()
        try:
            stdin, stdout, stderr = ssh.exec_command(command.render())
            out = stdout.read().decode()
            err = stderr.read().decode().strip()
            returncode = stdout.channel.recv_exit_status()
        finally:
            ssh.close()

        if returncode != 0:
            raise CommandError(command.argv, returncode, err)
        return out

    def put_file(self, local_path: str, remote_path: str) -> str:
        """Upload a file over SFTP and return its path on the host."""
        logger.info(f"📤 Uploading {os.path.basename(local_path)} to {self.host}:{remote_path}")
        ssh = self._connect()
        try:
            sftp = ssh.open_sftp()
            try:
                sftp.put(local_path, remote_path)
            finally:
                sftp.close()
        except (OSError, paramiko.SSHException) as e:
            raise CommandError(("sftp", "put", remote_path), None, str(e))
        finally:
            ssh.close()
        return remote_path

    def remove_file(self, remote_path: str) -> None:
        ssh = self._connect()
        try:
            sftp = ssh.open_sftp()
            try:
                sftp.remove(remote_path)
            finally:
                sftp.close()
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"Could not remove {remote_path} on {self.host}: {e}")
        finally:
            ssh.close()
