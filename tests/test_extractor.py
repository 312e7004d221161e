"""Tests for extractor module."""

import lzma
from unittest import mock

import pytest

from haos_vm.extractor import ArtifactExtractor, iter_xz
from haos_vm.models import ExtractionError


def test_extract(tmp_path, xz_file, image_payload):
    """Test streaming decompression produces the original image."""
    target = tmp_path / "haos_ova-14.2.qcow2"
    progress = mock.MagicMock()

    result = ArtifactExtractor(chunk_size=1024).extract(xz_file, target, progress)

    assert result == target
    assert target.read_bytes() == image_payload
    progress.assert_called_with(len(image_payload))


def test_extract_corrupt_input_removes_partial_target(tmp_path, xz_file):
    """Test a decode failure leaves no partial image behind."""
    data = xz_file.read_bytes()
    broken = tmp_path / "broken.qcow2.xz"
    broken.write_bytes(data[: len(data) // 2])
    target = tmp_path / "broken.qcow2"

    with pytest.raises(ExtractionError, match="Failed to extract"):
        ArtifactExtractor(chunk_size=1024).extract(broken, target)
    assert not target.exists()


def test_extract_missing_input(tmp_path):
    target = tmp_path / "out.qcow2"

    with pytest.raises(ExtractionError):
        ArtifactExtractor().extract(tmp_path / "missing.xz", target)
    assert not target.exists()


def test_extract_interrupted_removes_partial_target(tmp_path, xz_file):
    """Test interruption mid-stream removes the partial image and propagates."""
    target = tmp_path / "haos.qcow2"
    progress = mock.MagicMock(side_effect=KeyboardInterrupt)

    with pytest.raises(KeyboardInterrupt):
        ArtifactExtractor(chunk_size=1024).extract(xz_file, target, progress)
    assert not target.exists()


def test_extract_trailing_garbage_fails(tmp_path, xz_file):
    """Test data appended after the xz stream is rejected, not silently dropped."""
    appended = tmp_path / "appended.qcow2.xz"
    appended.write_bytes(xz_file.read_bytes() + b"GARBAGE-APPENDED-BYTES" * 100)
    target = tmp_path / "appended.qcow2"

    with pytest.raises(ExtractionError, match="Failed to extract"):
        ArtifactExtractor(chunk_size=1024).extract(appended, target)
    assert not target.exists()


def test_iter_xz_concatenated_streams(tmp_path):
    path = tmp_path / "multi.xz"
    path.write_bytes(
        lzma.compress(b"first stream ", format=lzma.FORMAT_XZ)
        + b"\x00" * 4
        + lzma.compress(b"second stream", format=lzma.FORMAT_XZ)
    )

    assert b"".join(iter_xz(path, chunk_size=7)) == b"first stream second stream"


def test_iter_xz_misaligned_padding(tmp_path):
    path = tmp_path / "padded.xz"
    path.write_bytes(lzma.compress(b"payload", format=lzma.FORMAT_XZ) + b"\x00" * 3)

    with pytest.raises(lzma.LZMAError, match="multiple of four"):
        list(iter_xz(path))
