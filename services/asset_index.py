"""
Per-upload asset index

Reconstructs what a relative reference inside extracted HTML was meant to
point at, using only the files of that same upload. Resolution order:

1. absolute URLs and data:/mailto:/javascript: refs are never resolved
2. the ref joined onto the HTML file's directory (refused if it climbs ``..``)
3. the ref read as if it were root-relative
4. the ref's basename, only when exactly one stored file has that basename

The index is a read-side cache built after extraction; the content store
remains the source of truth.
"""

import posixpath
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from config.settings import settings
from models.assets import ExtractedEntry, StoredAsset
from utils.logger import get_logger

logger = get_logger(__name__)

_UNRESOLVABLE_RE = re.compile(r"^(?:[a-z][a-z0-9+.-]*:|//)", re.IGNORECASE)
_MULTI_SLASH_RE = re.compile(r"/{2,}")


def normalize_asset_path(path: str) -> str:
    """Backslashes to slashes, drop ``.`` segments and repeated/edge slashes."""
    path = _MULTI_SLASH_RE.sub("/", path.replace("\\", "/"))
    segments = [segment for segment in path.split("/") if segment not in ("", ".")]
    return "/".join(segments)


def _strip_query(ref: str) -> str:
    for marker in ("?", "#"):
        ref = ref.split(marker, 1)[0]
    return ref


@dataclass(frozen=True)
class IndexedAsset:
    asset: StoredAsset
    path: str  # normalized, original case


class AssetIndex:
    def __init__(self) -> None:
        self.by_path: Dict[str, IndexedAsset] = {}
        self.by_basename: Dict[str, List[IndexedAsset]] = {}

    @classmethod
    def build(cls, entries: Iterable[ExtractedEntry]) -> "AssetIndex":
        index = cls()
        for entry in entries:
            path = normalize_asset_path(entry.original_path or entry.asset.sanitized_name)
            if not path:
                continue
            indexed = IndexedAsset(asset=entry.asset, path=path)
            key = path.lower()
            index.by_path[key] = indexed
            index.by_basename.setdefault(key.rsplit("/", 1)[-1], []).append(indexed)
        return index

    def __len__(self) -> int:
        return len(self.by_path)

    def assets(self) -> List[StoredAsset]:
        return [indexed.asset for indexed in self.by_path.values()]

    def resolve(self, html_path: str, asset_ref: str) -> Optional[StoredAsset]:
        ref = _strip_query((asset_ref or "").strip())
        if not ref or _UNRESOLVABLE_RE.match(ref):
            return None

        html_dir = posixpath.dirname(normalize_asset_path(html_path or ""))
        relative = f"{html_dir}/{ref}" if html_dir else ref
        if ".." not in relative:
            match = self.by_path.get(normalize_asset_path(relative).lower())
            if match:
                return match.asset

        match = self.by_path.get(normalize_asset_path(ref).lower())
        if match:
            return match.asset

        basename = normalize_asset_path(ref).lower().rsplit("/", 1)[-1]
        candidates = self.by_basename.get(basename, []) if basename else []
        if len(candidates) == 1:
            return candidates[0].asset
        if len(candidates) > 1:
            logger.debug(f"Ambiguous basename {basename!r} ({len(candidates)} candidates) for ref {asset_ref!r}")
        return None


class AssetIndexRegistry:
    """
    Caller-owned map of upload id -> AssetIndex with TTL and LRU eviction.

    Entries older than ``ttl_seconds`` are dropped on access; inserting past
    ``max_uploads`` evicts the least recently used upload.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, max_uploads: Optional[int] = None) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ASSET_INDEX_TTL_SECONDS
        self.max_uploads = max_uploads or settings.ASSET_INDEX_MAX_UPLOADS
        self._entries: "OrderedDict[str, Tuple[float, AssetIndex]]" = OrderedDict()

    def put(self, upload_id: str, index: AssetIndex) -> None:
        self.evict_expired()
        self._entries[upload_id] = (time.monotonic(), index)
        self._entries.move_to_end(upload_id)
        while len(self._entries) > self.max_uploads:
            evicted, _ = self._entries.popitem(last=False)
            logger.info(f"Asset index evicted (capacity) | upload_id={evicted}")

    def get(self, upload_id: str) -> Optional[AssetIndex]:
        item = self._entries.get(upload_id)
        if item is None:
            return None
        stored_at, index = item
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[upload_id]
            logger.info(f"Asset index expired | upload_id={upload_id}")
            return None
        self._entries.move_to_end(upload_id)
        return index

    def remove(self, upload_id: str) -> bool:
        return self._entries.pop(upload_id, None) is not None

    def evict_expired(self) -> int:
        now = time.monotonic()
        expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, upload_id: str) -> bool:
        return self.get(upload_id) is not None

    def __len__(self) -> int:
        return len(self._entries)
