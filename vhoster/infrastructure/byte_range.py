"""Single byte-range parsing for ``Range: bytes=<start>-<end>`` headers."""

import re
from dataclasses import dataclass
from typing import Optional

from vhoster.domain.errors import InvalidRange

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d+)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive
    size: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Parses a Range header against a resource of ``size`` bytes.

    Returns None when no header was sent. Raises InvalidRange for malformed
    bounds, ``start > end``, ``start`` at or past the end of the resource,
    suffix ranges and multi-range lists. An ``end`` past the last byte is
    clamped.
    """
    if header is None or not header.strip():
        return None

    match = _RANGE_RE.match(header)
    if not match:
        raise InvalidRange(header, size)

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1
    if start > end or start >= size:
        raise InvalidRange(header, size)

    return ByteRange(start=start, end=min(end, size - 1), size=size)
