"""Home Assistant OS VM provisioning for Proxmox VE."""

__version__ = "0.1.0"
