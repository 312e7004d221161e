"""Streaming xz decompression of cached HAOS images."""

import logging
import lzma
from pathlib import Path
from typing import Callable, Iterator, Optional

from haos_vm.models import ExtractionError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4 * 1024 * 1024


def iter_xz(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield the decompressed content of an .xz file, at most chunk_size bytes at a time.

    Concatenated streams are accepted. Between and after streams only zero
    padding in multiples of four bytes is allowed; any other trailing data
    raises lzma.LZMAError, as `xz -t` does.

    Raises:
        lzma.LZMAError: Corrupt data, trailing garbage or misaligned padding
        EOFError: The file ends inside a stream
        OSError: The file cannot be read
    """
    decompressor: Optional[lzma.LZMADecompressor] = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
    padding = 0
    pending = b""

    with open(path, "rb") as f:
        while True:
            if decompressor is None:
                # between streams
                if not pending:
                    pending = f.read(chunk_size)
                    if not pending:
                        break
                stripped = pending.lstrip(b"\x00")
                padding += len(pending) - len(stripped)
                pending = stripped
                if not pending:
                    continue
                if padding % 4:
                    raise lzma.LZMAError("Stream padding is not a multiple of four bytes")
                padding = 0
                decompressor = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)

            if decompressor.needs_input and not pending:
                pending = f.read(chunk_size)
                if not pending:
                    raise EOFError("Compressed file ended before the end-of-stream marker was reached")

            chunk = decompressor.decompress(pending, max_length=chunk_size)
            pending = b""
            if chunk:
                yield chunk
            if decompressor.eof:
                pending = decompressor.unused_data
                decompressor = None

    if padding % 4:
        raise lzma.LZMAError("Stream padding is not a multiple of four bytes")


class ArtifactExtractor:
    """Decompresses a verified artifact into a working image file."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def extract(
        self,
        cached_file: Path,
        target_path: Path,
        progress: Optional[Callable[[int], None]] = None,
    ) -> Path:
        """
        Stream-decompress cached_file into target_path.

        Memory use is bounded by the chunk size. On any decode or I/O error
        the partial target is removed before ExtractionError is raised.
        """
        cached_file = Path(cached_file)
        target_path = Path(target_path)
        logger.info(f"📦 Decompressing {cached_file.name} to {target_path}")

        written = 0
        try:
            with open(target_path, "wb") as dst:
                for chunk in iter_xz(cached_file, self.chunk_size):
                    dst.write(chunk)
                    written += len(chunk)
                    if progress:
                        progress(written)
        except (lzma.LZMAError, EOFError, OSError) as e:
            target_path.unlink(missing_ok=True)
            raise ExtractionError(f"Failed to extract {cached_file}: {e}")
        except BaseException:
            target_path.unlink(missing_ok=True)
            raise

        logger.info(f"✅ Decompressed {written / (1024**3):.2f} GiB to {target_path}")
        return target_path
