"""Tests for config module."""

import importlib

import pytest

import haos_vm.config
from haos_vm.artifact_cache import ArtifactCache
from haos_vm.models import Channel


@pytest.fixture
def reload_config():
    """Re-evaluate Config class attributes against the patched environment."""
    original = haos_vm.config.Config
    yield lambda: importlib.reload(haos_vm.config).Config
    haos_vm.config.Config = original


def test_defaults(monkeypatch, reload_config):
    """Test defaults match the Proxmox template cache and download limits."""
    for name in ("HAOS_CACHE_DIR", "HAOS_CONNECT_TIMEOUT", "HAOS_DOWNLOAD_TIMEOUT",
                 "HAOS_DOWNLOAD_RETRIES", "HAOS_RETRY_DELAY", "PVE_BACKEND", "PVE_VERIFY_SSL"):
        monkeypatch.delenv(name, raising=False)

    config = reload_config()

    assert config.CACHE_DIR == "/var/lib/vz/template/cache"
    assert config.CONNECT_TIMEOUT == 10
    assert config.DOWNLOAD_TIMEOUT == 1800
    assert config.DOWNLOAD_RETRIES == 3
    assert config.RETRY_DELAY == 2.0
    assert config.PVE_BACKEND == "local"
    assert config.VERIFY_SSL is False
    assert "{channel}" in config.METADATA_PRIMARY
    assert "{version}" in config.RELEASE_URL
    assert config.DEV_URL.startswith("https://os-artifacts.home-assistant.io/")


def test_env_overrides(monkeypatch, reload_config):
    """Test environment variables override defaults."""
    monkeypatch.setenv("HAOS_CACHE_DIR", "/tmp/haos-cache")
    monkeypatch.setenv("HAOS_DOWNLOAD_RETRIES", "5")
    monkeypatch.setenv("PVE_BACKEND", "https")
    monkeypatch.setenv("PVE_VERIFY_SSL", "true")

    config = reload_config()

    assert config.CACHE_DIR == "/tmp/haos-cache"
    assert config.DOWNLOAD_RETRIES == 5
    assert config.PVE_BACKEND == "https"
    assert config.VERIFY_SSL is True


def test_get_node_name_from_env(monkeypatch):
    """Test PVE_NODE wins over everything else."""
    monkeypatch.setenv("PVE_NODE", "still-fawn")

    assert haos_vm.config.Config.get_node_name() == "still-fawn"


def test_get_node_name_from_host(monkeypatch):
    """Test node name falls back to the short name of PVE_HOST."""
    monkeypatch.delenv("PVE_NODE", raising=False)
    monkeypatch.setattr(haos_vm.config.Config, "PVE_HOST", "chief-horse.maas")

    assert haos_vm.config.Config.get_node_name() == "chief-horse"


def test_get_node_name_from_hostname(monkeypatch):
    """Test node name defaults to this machine's short hostname."""
    monkeypatch.delenv("PVE_NODE", raising=False)
    monkeypatch.setattr(haos_vm.config.Config, "PVE_HOST", None)
    monkeypatch.setattr("haos_vm.config.socket.gethostname", lambda: "pve.local")

    assert haos_vm.config.Config.get_node_name() == "pve"


def test_get_request_file(monkeypatch):
    """Test request file is optional and ignores blank values."""
    monkeypatch.delenv("HAOS_REQUEST_FILE", raising=False)
    assert haos_vm.config.Config.get_request_file() is None

    monkeypatch.setenv("HAOS_REQUEST_FILE", "  ")
    assert haos_vm.config.Config.get_request_file() is None

    monkeypatch.setenv("HAOS_REQUEST_FILE", "/etc/haos/request.yaml")
    assert haos_vm.config.Config.get_request_file() == "/etc/haos/request.yaml"


def test_shipped_artifact_urls(monkeypatch, reload_config, tmp_path):
    """Test the default hosts: stable releases on GitHub, dev builds on the artifact host."""
    monkeypatch.delenv("HAOS_RELEASE_URL", raising=False)
    monkeypatch.delenv("HAOS_DEV_URL", raising=False)
    config = reload_config()
    cache = ArtifactCache(str(tmp_path), config.RELEASE_URL, config.DEV_URL)

    assert cache.descriptor_for(Channel.STABLE, "17.0").url == (
        "https://github.com/home-assistant/operating-system/releases/download/17.0/haos_ova-17.0.qcow2.xz"
    )
    assert cache.descriptor_for(Channel.DEV, "17.0").url == (
        "https://os-artifacts.home-assistant.io/17.0/haos_ova-17.0.qcow2.xz"
    )
