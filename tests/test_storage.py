"""Tests for storage module."""

import pytest

from haos_vm.models import ConfigurationError, StoragePool
from haos_vm.storage import THIN_OPTIONS, StorageAdapter


class TestProfileFor:
    """Test backend type → disk addressing profile."""

    @pytest.mark.parametrize("backend_type", ["nfs", "dir"])
    def test_directory_backends(self, backend_type):
        profile = StorageAdapter.profile_for(backend_type)

        assert profile.disk_extension == ".raw"
        assert profile.path_prefix
        assert profile.import_format == "raw"
        assert profile.disk_ref("local", 108, 0) == "local:108/vm-108-disk-0.raw"
        assert not profile.thin_provisioned

    def test_btrfs(self):
        profile = StorageAdapter.profile_for("btrfs")

        assert profile.disk_ref("tank", 108, 1) == "tank:vm-108-disk-1"
        assert profile.import_format == "raw"
        assert profile.force_efitype
        assert not profile.thin_provisioned

    def test_zfspool(self):
        profile = StorageAdapter.profile_for("zfspool")

        assert profile.thin_options == THIN_OPTIONS
        assert profile.force_efitype
        assert profile.disk_ref("local-zfs", 108, 0) == "local-zfs:vm-108-disk-0"

    def test_lvmthin_uses_native_format(self):
        profile = StorageAdapter.profile_for("lvmthin")

        assert profile.import_format is None
        assert profile.thin_provisioned
        assert not profile.force_efitype

    @pytest.mark.parametrize("backend_type", ["lvm", "iscsi", "cephfs"])
    def test_unknown_backends_get_flat_thick_raw(self, backend_type):
        profile = StorageAdapter.profile_for(backend_type)

        assert profile.backend_type == backend_type
        assert profile.disk_extension == ""
        assert not profile.path_prefix
        assert profile.import_format == "raw"
        assert not profile.thin_provisioned

    def test_case_and_whitespace_insensitive(self):
        assert StorageAdapter.profile_for(" ZFSPool ") == StorageAdapter.profile_for("zfspool")

    def test_empty_type(self):
        assert StorageAdapter.profile_for("").backend_type == "unknown"


def test_parse_storage_pools(sample_storage_entries):
    """Test inactive pools are dropped and the rest sorted by name."""
    pools = StorageAdapter.parse_storage_pools(sample_storage_entries)

    assert [p.name for p in pools] == ["local", "local-lvm"]
    assert pools[1].backend_type == "lvmthin"
    assert pools[1].available_gib == 100.0


def test_parse_storage_pools_skips_nameless_and_disabled():
    entries = [{"type": "dir"}, {"storage": "backup", "type": "dir", "enabled": 0}]

    assert StorageAdapter.parse_storage_pools(entries) == []


class TestSelectStorage:
    pools = [
        StoragePool(name="local", backend_type="dir"),
        StoragePool(name="local-lvm", backend_type="lvmthin"),
    ]

    def test_requested_pool(self):
        assert StorageAdapter.select_storage(self.pools, "local-lvm").name == "local-lvm"

    def test_requested_pool_missing(self):
        with pytest.raises(ConfigurationError, match="'tank' is not an images-capable pool"):
            StorageAdapter.select_storage(self.pools, "tank")

    def test_single_pool_is_automatic(self):
        assert StorageAdapter.select_storage(self.pools[:1]).name == "local"

    def test_ambiguous_without_request(self):
        with pytest.raises(ConfigurationError, match="--storage"):
            StorageAdapter.select_storage(self.pools)

    def test_no_pools(self):
        with pytest.raises(ConfigurationError, match="Unable to detect a valid storage location"):
            StorageAdapter.select_storage([], "local")
