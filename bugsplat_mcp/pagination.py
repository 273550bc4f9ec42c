"""
Byte-range reads of cached attachment files.

    start = min(offset, total)
    end   = min(offset + limit, total)

The chunk is bytes [start, end). Each call re-reads from disk; nothing is
cached between calls.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple


@dataclass(frozen=True)
class PaginationInfo:
    offset: int
    limit: int  # bytes actually returned
    total_size: int
    has_more: bool
    next_offset: Optional[int]

    @property
    def end(self) -> int:
        return self.offset + self.limit

    @classmethod
    def for_range(cls, offset: int, limit: int, total_size: int) -> "PaginationInfo":
        start = min(offset, total_size)
        end = min(offset + limit, total_size)
        has_more = end < total_size
        return cls(
            offset=start,
            limit=end - start,
            total_size=total_size,
            has_more=has_more,
            next_offset=end if has_more else None,
        )


def read_range(path: Path, offset: int = 0, limit: int = 262144) -> Tuple[bytes, PaginationInfo]:
    """
    Read a byte range from a file.

    An offset past end-of-file yields an empty chunk with has_more=False.
    The limit is not clamped here; callers enforce the configured maximum.

    Args:
        path: File to read
        offset: Starting byte position (>= 0)
        limit: Maximum number of bytes to read (>= 1)

    Returns:
        (chunk, PaginationInfo)
    """
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    with open(path, "rb") as f:
        total_size = f.seek(0, 2)
        info = PaginationInfo.for_range(offset, limit, total_size)
        f.seek(info.offset)
        chunk = f.read(info.limit)

    # File may have shrunk between the size probe and the read
    if len(chunk) != info.limit:
        info = PaginationInfo.for_range(offset, len(chunk), info.offset + len(chunk))
    return chunk, info


def format_pagination_header(file_name: str, info: PaginationInfo) -> str:
    if info.has_more:
        status = f"Use offset={info.next_offset} for next chunk"
    else:
        status = "Complete"
    return f"File: {file_name} ({info.offset}-{info.end}/{info.total_size} bytes) - {status}\n\n"
