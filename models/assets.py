from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Union


@dataclass(frozen=True)
class DetectedType:
    mime: str
    ext: Optional[str] = None


@dataclass(frozen=True)
class StoredAsset:
    """A buffer committed to the content store. Write-once."""

    id: str
    sanitized_name: str
    size_bytes: int
    detected_mime: str
    content_hash: str


@dataclass(frozen=True)
class ExtractionPolicy:
    """Per-call rules applied to every archive member."""

    allowed_mime_set: FrozenSet[str]
    enable_virus_scan: bool = True
    per_entry_max_bytes: Optional[int] = None
    prioritize_html: bool = False
    max_files: Optional[int] = None
    max_total_bytes: Optional[int] = None
    dedup: bool = False
    generate_previews: bool = False
    max_depth: int = 1


class SkipReason(str, Enum):
    PATH_TRAVERSAL = "path-traversal"
    MAC_METADATA = "mac-metadata"
    DECRYPT_FAILED = "decrypt-failed"
    PER_FILE_SIZE_LIMIT = "per-file-size-limit"
    FILE_COUNT_LIMIT = "file-count-limit"
    TOTAL_SIZE_LIMIT = "total-size-limit"
    DUPLICATE = "duplicate"
    DISALLOWED_MIME = "disallowed-mime"
    VIRUS = "virus"
    STORE_FAILED = "store-failed"
    CAPABILITY_UNAVAILABLE = "capability-unavailable"
    DEPTH_LIMIT = "depth-limit"
    CORRUPTED_ARCHIVE = "corrupted-zip"


@dataclass(frozen=True)
class SkippedEntry:
    path: Optional[str]
    reason: str

    @classmethod
    def of(cls, path: Optional[str], reason: SkipReason, detail: Optional[str] = None) -> "SkippedEntry":
        code = reason.value if detail is None else f"{reason.value}:{detail}"
        return cls(path=path, reason=code)


@dataclass(frozen=True)
class ExtractedEntry:
    """An archive member that passed policy and was stored."""

    asset: StoredAsset
    original_path: str
    url: str
    priority: int
    depth: int = 0
    preview: Optional[StoredAsset] = None
    preview_url: Optional[str] = None


EntryOutcome = Union[ExtractedEntry, SkippedEntry]


@dataclass
class ExtractionResult:
    extracted: List[ExtractedEntry] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)
    used_library: bool = True
    total_bytes: int = 0


@dataclass
class DeleteOutcome:
    deleted_paths: List[str] = field(default_factory=list)
    bytes_reclaimed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class BulkDeleteOutcome:
    id: str
    ok: bool
    deleted: int = 0
    bytes_reclaimed: int = 0
    reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
