"""
ZipPreviewProcessor module

Lists a ZIP's entries from its central directory alone: nothing is
decompressed. Used to show the uploader what an archive holds before any
extraction is attempted.

Returns None (not an exception) when the End-Of-Central-Directory record
cannot be found in the trailing bytes. The number of returned entries is
capped; the EOCD entry count is still reported.
"""

import struct
from dataclasses import dataclass, field
from typing import List, Optional

from config.settings import settings
from processors.archive_processor import classify_entry_name
from utils.logger import get_logger

logger = get_logger(__name__)

EOCD_SIGNATURE = 0x06054B50
CENTRAL_DIRECTORY_SIGNATURE = 0x02014B50
EOCD_MIN_SIZE = 22
MAX_COMMENT_SIZE = 0xFFFF
CENTRAL_HEADER_SIZE = 46

# Expansion factors flagged as suspicious
ENTRY_EXPANSION_THRESHOLD = 50
OVERALL_EXPANSION_THRESHOLD = 100

_EOCD = struct.Struct("<IHHHHIIH")
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")


@dataclass
class EndOfCentralDirectory:
    disk: int
    cd_disk: int
    entries_on_disk: int
    entries_total: int
    cd_size: int
    cd_offset: int
    comment_length: int
    offset: int


@dataclass
class PreviewEntry:
    name: str
    compressed_size: int
    uncompressed_size: int
    crc32: int
    flags: int
    method: int
    encrypted: bool
    is_directory: bool
    compression_ratio: Optional[float]
    skip_reason: Optional[str] = None


@dataclass
class PreviewTotals:
    files: int = 0
    dirs: int = 0
    compressed: int = 0
    uncompressed: int = 0
    overall_ratio: Optional[float] = None
    total_entries: int = 0
    truncated: bool = False


@dataclass
class HighExpansionEntry:
    name: str
    ratio: float
    uncompressed_size: int
    compressed_size: int


@dataclass
class ZipPreview:
    entries: List[PreviewEntry] = field(default_factory=list)
    totals: PreviewTotals = field(default_factory=PreviewTotals)
    high_expansion_entries: List[HighExpansionEntry] = field(default_factory=list)
    high_overall_expansion: bool = False


def find_eocd(data: bytes) -> Optional[EndOfCentralDirectory]:
    """Scan backwards over the trailing 22 + 65535 bytes for the EOCD record."""
    start = max(0, len(data) - (EOCD_MIN_SIZE + MAX_COMMENT_SIZE))
    for offset in range(len(data) - EOCD_MIN_SIZE, start - 1, -1):
        if data[offset:offset + 4] != b"PK\x05\x06":
            continue
        (_sig, disk, cd_disk, on_disk, total, cd_size, cd_offset, comment_len) = _EOCD.unpack_from(data, offset)
        return EndOfCentralDirectory(disk, cd_disk, on_disk, total, cd_size, cd_offset, comment_len, offset)
    return None


class ZipPreviewProcessor:
    def __init__(self, max_entries: Optional[int] = None) -> None:
        self.max_entries = max_entries or settings.ZIP_PREVIEW_MAX_ENTRIES

    def preview(self, zip_data: bytes, max_entries: Optional[int] = None) -> Optional[ZipPreview]:
        eocd = find_eocd(zip_data)
        if eocd is None:
            logger.warning(f"ZIP preview failed: EOCD not found in {len(zip_data)} bytes")
            return None

        limit = max_entries if max_entries is not None else self.max_entries
        entries: List[PreviewEntry] = []
        offset = eocd.cd_offset

        for _ in range(min(eocd.entries_total, limit)):
            if offset + CENTRAL_HEADER_SIZE > len(zip_data):
                break
            header = _CENTRAL_HEADER.unpack_from(zip_data, offset)
            if header[0] != CENTRAL_DIRECTORY_SIGNATURE:
                break

            flags, method = header[3], header[4]
            crc, comp_size, uncomp_size = header[7], header[8], header[9]
            name_len, extra_len, comment_len = header[10], header[11], header[12]

            name_start = offset + CENTRAL_HEADER_SIZE
            # Bit 11: file name is UTF-8; otherwise CP437
            encoding = "utf-8" if flags & 0x0800 else "cp437"
            name = zip_data[name_start:name_start + name_len].decode(encoding, errors="replace")
            is_dir = name.endswith("/")

            reason = None if is_dir else classify_entry_name(name)
            entries.append(PreviewEntry(
                name=name,
                compressed_size=comp_size,
                uncompressed_size=uncomp_size,
                crc32=crc,
                flags=flags,
                method=method,
                encrypted=bool(flags & 0x0001),
                is_directory=is_dir,
                compression_ratio=(1 - comp_size / uncomp_size) if uncomp_size > 0 else None,
                skip_reason=reason.value if reason else None,
            ))

            offset = name_start + name_len + extra_len + comment_len

        files = [e for e in entries if not e.is_directory]
        compressed = sum(e.compressed_size for e in files)
        uncompressed = sum(e.uncompressed_size for e in files)

        preview = ZipPreview(
            entries=entries,
            totals=PreviewTotals(
                files=len(files),
                dirs=len(entries) - len(files),
                compressed=compressed,
                uncompressed=uncompressed,
                overall_ratio=(1 - compressed / uncompressed) if uncompressed > 0 else None,
                total_entries=eocd.entries_total,
                truncated=eocd.entries_total > len(entries),
            ),
        )

        for e in files:
            expansion = e.uncompressed_size / max(1, e.compressed_size)
            if e.uncompressed_size > 0 and expansion >= ENTRY_EXPANSION_THRESHOLD:
                preview.high_expansion_entries.append(
                    HighExpansionEntry(e.name, expansion, e.uncompressed_size, e.compressed_size)
                )
        preview.high_overall_expansion = uncompressed > 0 and uncompressed / max(1, compressed) >= OVERALL_EXPANSION_THRESHOLD

        if preview.totals.truncated:
            logger.info(f"ZIP preview truncated at {len(entries)} of {eocd.entries_total} entries")
        return preview
