"""Filesystem-backed store for uploaded and converted media files.

Files live flat in one directory under opaque names (``<id><ext>``). Nothing is
cached in memory; every operation goes to the filesystem.
"""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from vhoster.domain.errors import NotFound, StorageInitError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class MediaHandle:
    """An open media file.

    ``size`` comes from the open descriptor, so the handle keeps serving the
    bytes it was opened on even if the name is replaced or unlinked meanwhile.
    """

    def __init__(self, fh: BinaryIO):
        self._fh = fh
        self.size = os.fstat(fh.fileno()).st_size

    def iter_range(self, start: int = 0, end: Optional[int] = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yields bytes ``start..end`` inclusive (``end`` defaults to the last byte)."""
        if end is None:
            end = self.size - 1
        self._fh.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            chunk = self._fh.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "MediaHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class MediaStore:
    """Flat directory of media files addressed by stored filename."""

    def __init__(self, root: Path, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.root = Path(root)
        self.chunk_size = chunk_size

    def ensure_ready(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageInitError(f"Cannot create uploads directory {self.root}: {exc}") from exc

    def path_for(self, filename: str) -> Path:
        """Resolves a stored filename, rejecting anything outside the store."""
        if not filename or Path(filename).name != filename:
            raise NotFound(f"Invalid stored filename: {filename!r}")
        return self.root / filename

    def put(self, source: Union[bytes, BinaryIO], suggested_extension: str = "", stem: Optional[str] = None) -> str:
        """Writes bytes or a readable stream and returns the stored filename.

        Data is written to a ``.part`` file first and renamed into place.
        """
        ext = (suggested_extension or "").lower()
        filename = f"{stem or uuid.uuid4().hex}{ext}"
        final_path = self.path_for(filename)
        part_path = final_path.with_name(final_path.name + ".part")
        try:
            with open(part_path, "wb") as out:
                if isinstance(source, (bytes, bytearray)):
                    out.write(source)
                else:
                    shutil.copyfileobj(source, out, self.chunk_size)
            os.replace(part_path, final_path)
        except BaseException:
            part_path.unlink(missing_ok=True)
            raise
        logger.debug(f"STORE_PUT: {filename} ({final_path.stat().st_size} bytes)")
        return filename

    def exists(self, filename: str) -> bool:
        try:
            return self.path_for(filename).is_file()
        except NotFound:
            return False

    def stat(self, filename: str) -> int:
        """Returns the size in bytes; raises NotFound if the file is missing."""
        try:
            return self.path_for(filename).stat().st_size
        except FileNotFoundError as exc:
            raise NotFound(f"Stored file missing: {filename}") from exc

    def open(self, filename: str) -> MediaHandle:
        try:
            fh = open(self.path_for(filename), "rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFound(f"Stored file missing: {filename}") from exc
        return MediaHandle(fh)

    def replace(self, old_filename: str, new_filename: str) -> None:
        """Makes ``new_filename`` authoritative and removes ``old_filename``.

        Not atomic across the two names; callers serialize this per id.
        """
        if not self.exists(new_filename):
            raise NotFound(f"Replacement file missing: {new_filename}")
        if old_filename != new_filename:
            self.remove(old_filename)

    def remove(self, filename: str) -> None:
        try:
            self.path_for(filename).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not remove {filename}: {exc}")
