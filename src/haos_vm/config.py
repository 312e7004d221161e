import os
import socket
from typing import Optional

from dotenv import load_dotenv


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Channel metadata; {channel} is replaced with stable, beta or dev
    METADATA_PRIMARY = os.getenv("HAOS_METADATA_PRIMARY", "https://version.home-assistant.io/{channel}.json")
    METADATA_FALLBACK = os.getenv(
        "HAOS_METADATA_FALLBACK",
        "https://raw.githubusercontent.com/home-assistant/version/master/{channel}.json",
    )
    METADATA_TIMEOUT = int(os.getenv("HAOS_METADATA_TIMEOUT", "15"))

    # Artifact hosts; {version} is the resolved OVA version
    RELEASE_URL = os.getenv(
        "HAOS_RELEASE_URL",
        "https://github.com/home-assistant/operating-system/releases/download/{version}/haos_ova-{version}.qcow2.xz",
    )
    DEV_URL = os.getenv(
        "HAOS_DEV_URL",
        "https://os-artifacts.home-assistant.io/{version}/haos_ova-{version}.qcow2.xz",
    )

    CACHE_DIR = os.getenv("HAOS_CACHE_DIR", "/var/lib/vz/template/cache")
    WORK_DIR = os.getenv("HAOS_WORK_DIR", "/var/lib/vz/template/tmp")

    CONNECT_TIMEOUT = int(os.getenv("HAOS_CONNECT_TIMEOUT", "10"))
    DOWNLOAD_TIMEOUT = int(os.getenv("HAOS_DOWNLOAD_TIMEOUT", "1800"))
    DOWNLOAD_RETRIES = int(os.getenv("HAOS_DOWNLOAD_RETRIES", "3"))
    RETRY_DELAY = float(os.getenv("HAOS_RETRY_DELAY", "2"))

    # Proxmox access: local (on the host), ssh or https
    PVE_BACKEND = os.getenv("PVE_BACKEND", "local")
    PVE_HOST = os.getenv("PVE_HOST")
    API_TOKEN = os.getenv("API_TOKEN")
    VERIFY_SSL = os.getenv("PVE_VERIFY_SSL", "false").lower() in ("1", "true", "yes")
    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    REMOTE_IMAGE_DIR = os.getenv("REMOTE_IMAGE_DIR", "/var/lib/vz/template/tmp")

    VM_START_TIMEOUT = int(os.getenv("VM_START_TIMEOUT", "180"))

    @staticmethod
    def get_node_name() -> str:
        """Proxmox node to provision on, defaulting to this machine's short hostname."""
        node = os.getenv("PVE_NODE")
        if node:
            return node
        if Config.PVE_HOST:
            return Config.PVE_HOST.split(".")[0]
        return socket.gethostname().split(".")[0]

    @staticmethod
    def get_request_file() -> Optional[str]:
        """Optional YAML file holding a provisioning request."""
        path = os.getenv("HAOS_REQUEST_FILE", "").strip()
        return os.path.expanduser(path) if path else None
