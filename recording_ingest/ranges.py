from dataclasses import dataclass
from typing import Optional


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int, reason: str) -> None:
        super().__init__(reason)
        self.size = size
        self.reason = reason


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """
    Resolve a ``Range`` header against a file of ``size`` bytes.

    Returns None when there is no header (serve everything). Only the first range of a
    multi-range header is honoured. ``end`` is clamped to the last byte; a start at or past the
    end of the file, an inverted range or a malformed header raises RangeNotSatisfiable.
    """
    if header is None or not header.strip():
        return None
    unit, _, byte_ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not byte_ranges:
        raise RangeNotSatisfiable(size, "invalid range header")

    first = byte_ranges.split(",", 1)[0].strip()
    start_str, sep, end_str = first.partition("-")
    if not sep:
        raise RangeNotSatisfiable(size, "invalid range format")
    start_str, end_str = start_str.strip(), end_str.strip()

    try:
        if not start_str:
            # Suffix range: the last N bytes.
            suffix = int(end_str)
            if suffix <= 0 or size == 0:
                raise RangeNotSatisfiable(size, "range out of bounds")
            return ByteRange(max(size - suffix, 0), size - 1)
        start = int(start_str)
        end = int(end_str) if end_str else size - 1
    except ValueError:
        raise RangeNotSatisfiable(size, "invalid range format") from None

    if start < 0 or start >= size or end < start:
        raise RangeNotSatisfiable(size, "range out of bounds")
    return ByteRange(start, min(end, size - 1))
