#!/usr/bin/env python3
"""
Download cache for HAOS disk images.

Handles:
- Download URL construction per channel
- Reuse of cached images that pass the xz integrity check
- Self-healing: corrupt cache entries are deleted and re-downloaded
- Bounded retries with connect and overall transfer timeouts

A cache entry is either absent or a complete, verified .xz file. Downloads go
to a .part file that is only renamed into place once the transfer finishes.
"""

import logging
import lzma
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from haos_vm.extractor import iter_xz
from haos_vm.models import ArtifactDescriptor, Channel, DownloadError, IntegrityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
# The transfer deadline is checked once per downloaded chunk
DOWNLOAD_CHUNK_SIZE = 16 * 1024

ProgressCallback = Callable[[int, Optional[int]], None]


class _PermanentFailure(Exception):
    pass


class _TransientFailure(Exception):
    pass


def verify_xz(path: Path) -> bool:
    """Decode the whole file as xz, rejecting trailing data, and report whether it is intact."""
    if not path.is_file() or path.stat().st_size == 0:
        return False
    try:
        for _ in iter_xz(path, CHUNK_SIZE):
            pass
        return True
    except (lzma.LZMAError, EOFError, OSError) as e:
        logger.debug(f"Integrity check failed for {path}: {e}")
        return False


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class ArtifactCache:
    """Maps channel + version to a verified local image file."""

    def __init__(
        self,
        cache_dir: str,
        release_url: str,
        dev_url: str,
        connect_timeout: int = 10,
        transfer_timeout: int = 1800,
        retries: int = 3,
        retry_delay: float = 2.0,
        read_timeout: int = 60,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.release_url = release_url
        self.dev_url = dev_url
        self.connect_timeout = connect_timeout
        self.transfer_timeout = transfer_timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.read_timeout = read_timeout
        self.session = session or requests.Session()

    def descriptor_for(self, channel: Channel, version: str) -> ArtifactDescriptor:
        """Build the descriptor; dev images live on the artifact host, the rest on release assets."""
        template = self.dev_url if channel is Channel.DEV else self.release_url
        url = template.format(version=version)
        basename = url.rstrip("/").rsplit("/", 1)[-1]
        return ArtifactDescriptor(
            channel=channel,
            version=version,
            url=url,
            cache_path=self.cache_dir / basename,
        )

    def ensure(self, descriptor: ArtifactDescriptor, progress: Optional[ProgressCallback] = None) -> Path:
        """
        Return a cached, verified image, downloading it when missing or corrupt.

        Raises:
            DownloadError: Transfer failed after all retries
            IntegrityError: Freshly downloaded file is not valid xz
        """
        path = descriptor.cache_path
        name = descriptor.basename

        if path.is_file() and path.stat().st_size > 0:
            if verify_xz(path):
                logger.info(f"✅ Using cached image {name}")
                return path
            logger.warning(f"❌ Cached file {name} is corrupted. Deleting...")
            _unlink(path)
        elif path.exists():
            logger.info(f"Cached file {name} is empty, treating as missing")
            _unlink(path)

        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"📥 Downloading image: {name}")
        self._download(descriptor, progress)

        if not verify_xz(path):
            _unlink(path)
            raise IntegrityError(f"Downloaded file {name} is corrupted")

        logger.info(f"✅ Downloaded and validated {name}")
        return path

    def discard(self, descriptor: ArtifactDescriptor) -> bool:
        """Remove a cache entry. Returns True if a file was deleted."""
        if descriptor.cache_path.exists():
            _unlink(descriptor.cache_path)
            logger.info(f"🗑️  Deleted cached image {descriptor.basename}")
            return True
        return False

    def _download(self, descriptor: ArtifactDescriptor, progress: Optional[ProgressCallback]) -> None:
        partial = descriptor.cache_path.with_name(descriptor.basename + ".part")
        attempts = self.retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                self._transfer(descriptor.url, partial, progress)
                partial.replace(descriptor.cache_path)
                return
            except _PermanentFailure as e:
                _unlink(partial)
                raise DownloadError(f"Download failed: {descriptor.url}: {e}")
            except (requests.RequestException, _TransientFailure) as e:
                _unlink(partial)
                last_error = e
                if attempt < attempts:
                    logger.warning(f"⚠️  Download attempt {attempt}/{attempts} failed ({e}), retrying in {self.retry_delay}s")
                    time.sleep(self.retry_delay)
            # requests exceptions are OSErrors too, so local write failures come last
            except OSError as e:
                _unlink(partial)
                raise DownloadError(f"Download failed: could not write {partial}: {e}")
            except BaseException:
                _unlink(partial)
                raise

        raise DownloadError(f"Download failed: {descriptor.url}: {last_error}")

    def _transfer(self, url: str, partial: Path, progress: Optional[ProgressCallback]) -> None:
        deadline = time.monotonic() + self.transfer_timeout
        read_timeout = min(self.read_timeout, self.transfer_timeout)
        response = self.session.get(url, stream=True, timeout=(self.connect_timeout, read_timeout))
        try:
            if 400 <= response.status_code < 500:
                raise _PermanentFailure(f"HTTP {response.status_code}")
            response.raise_for_status()

            total = int(response.headers.get("content-length") or 0) or None
            done = 0
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    done += len(chunk)
                    if progress:
                        progress(done, total)
                    if time.monotonic() > deadline:
                        raise _TransientFailure(f"transfer exceeded {self.transfer_timeout}s")
        finally:
            response.close()
