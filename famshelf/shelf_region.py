"""A plain region of memory backed by a shelf file.

The shelf file must already exist; creating the region only sizes it, and
destroying it leaves the file for the caller to remove.
"""

from __future__ import annotations

import logging
import mmap
import os
import stat

log = logging.getLogger(__name__)

_ACCESS_MASK = os.O_WRONLY | os.O_RDWR


class ShelfRegionError(Exception):
    """A shelf region could not be created, opened, mapped or changed."""


class ShelfRegion:
    """A region in the shelf file at ``pathname``."""

    def __init__(self, pathname) -> None:
        self._path = os.fspath(pathname)
        self._fd: int | None = None
        self._flags = os.O_RDWR

    @property
    def is_open(self) -> bool:
        """Whether the region is open."""
        return self._fd is not None

    def _require_open(self) -> int:
        if self._fd is None:
            raise ShelfRegionError("shelf region is not open")
        return self._fd

    def create(self, size: int) -> None:
        """Size the existing shelf file to ``size`` bytes."""
        log.debug("ShelfRegion.create %s %d", self._path, size)
        if self.is_open:
            raise ShelfRegionError("cannot create a region that is open")
        if not os.path.isfile(self._path):
            raise ShelfRegionError(f"shelf file {self._path} not found")
        try:
            os.truncate(self._path, size)
        except OSError as exc:
            raise ShelfRegionError(f"cannot size shelf file {self._path}: {exc}") from exc

    def resize(self, size: int) -> None:
        """Change the size of the open region."""
        fd = self._require_open()
        try:
            os.ftruncate(fd, size)
        except OSError as exc:
            raise ShelfRegionError(f"cannot resize shelf file {self._path}: {exc}") from exc

    def destroy(self) -> None:
        """Check the region is closed; removing the file is left to the caller."""
        if self.is_open:
            raise ShelfRegionError("cannot destroy a region that is open")

    def verify(self) -> bool:
        """Whether the shelf file exists."""
        if self.is_open:
            raise ShelfRegionError("cannot verify a region that is open")
        return os.path.isfile(self._path)

    def open(self, flags: int = os.O_RDWR) -> None:
        """Open the shelf file with the ``os.open`` ``flags``."""
        if self.is_open:
            raise ShelfRegionError("shelf region is already open")
        if not self.verify():
            raise ShelfRegionError(f"shelf file {self._path} not found")
        try:
            self._fd = os.open(self._path, flags)
        except OSError as exc:
            raise ShelfRegionError(f"cannot open shelf file {self._path}: {exc}") from exc
        self._flags = flags

    def close(self) -> None:
        """Close the shelf file."""
        fd = self._require_open()
        self._fd = None
        os.close(fd)

    def size(self) -> int:
        """Current size of the region in bytes."""
        return os.fstat(self._require_open()).st_size

    def map(self, length: int, offset: int = 0) -> mmap.mmap:
        """Map ``length`` bytes at ``offset``; read-only if the region was opened so."""
        fd = self._require_open()
        if (self._flags & _ACCESS_MASK) == os.O_RDONLY:
            access = mmap.ACCESS_READ
        else:
            access = mmap.ACCESS_WRITE
        try:
            return mmap.mmap(fd, length, access=access, offset=offset)
        except (OSError, ValueError) as exc:
            raise ShelfRegionError(
                f"cannot map {length} bytes at offset {offset}: {exc}"
            ) from exc

    def unmap(self, mapped: mmap.mmap) -> None:
        """Unmap a mapping made by :meth:`map`."""
        self._require_open()
        try:
            mapped.close()
        except BufferError as exc:
            raise ShelfRegionError("mapping is still in use") from exc

    def get_permission(self) -> int:
        """Permission bits of the shelf file."""
        return stat.S_IMODE(os.fstat(self._require_open()).st_mode)

    def set_permission(self, mode: int) -> None:
        """Set the permission bits of the shelf file."""
        fd = self._require_open()
        try:
            os.fchmod(fd, mode)
        except OSError as exc:
            raise ShelfRegionError(f"cannot change permissions: {exc}") from exc