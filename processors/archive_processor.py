"""
ArchiveProcessor module

Extracts an untrusted, possibly password-protected ZIP into the content store
under a per-call ExtractionPolicy.

Every non-directory member yields exactly one outcome, either an
ExtractedEntry or a SkippedEntry with a reason code:

1. name contains ``..``                          -> path-traversal
2. macOS metadata (``._*``, ``.DS_Store``, ``__MACOSX/``, xattr markers)
                                                 -> mac-metadata
3. more than ``max_files`` admitted members      -> file-count-limit
4. decryption / decompression fails              -> decrypt-failed
5. larger than ``per_entry_max_bytes``           -> per-file-size-limit
6. running total above ``max_total_bytes``       -> total-size-limit
7. same content already admitted (``dedup``)     -> duplicate
8. sniffed MIME not in the allow-list            -> disallowed-mime:<mime>
9. virus scan enabled and verdict is not clean   -> virus:<verdict>
10. content store write fails                    -> store-failed

A member sniffed as a ZIP is not an outcome of its own: it is opened and its
members are walked in its place, sharing the count, total and dedup
accounting. Past ``max_depth`` it is skipped as depth-limit, and an
unreadable nested container as corrupted-zip. Only an unreadable outer
container is a hard error (ArchiveStructureError).

Members are decompressed one at a time in archive order (depth first), so the
count, total and dedup accounting does not depend on scheduling. Scanning and
storing then run on up to ``max_workers`` members concurrently; each result
lands in the slot reserved for it in walk order. A worker that fails
unexpectedly settles its member as store-failed.
"""

import asyncio
import io
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple

from config.settings import settings
from models.assets import (
    DetectedType,
    EntryOutcome,
    ExtractedEntry,
    ExtractionPolicy,
    ExtractionResult,
    SkippedEntry,
    SkipReason,
)
from services.clam_av import ClamAVService
from services.content_store import ContentStoreService
from services.file_hashing import FileHashingService, sha256_hex
from services.image_preview import ImagePreviewService
from services.mime_sniffing import MimeSniffingService
from utils.errors import ArchiveStructureError, StorageError
from utils.logger import get_logger

logger = get_logger(__name__)

ARCHIVE_MIME = "application/zip"
OPEN_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError)

CATEGORY_PRIORITY = {
    "html": 10,
    "image": 8,
    "pdf": 6,
    "text": 2,
}


class ArchiveSupport(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


def probe_archive_support() -> ArchiveSupport:
    """Report whether the deflate codec ZIP extraction depends on is present."""
    try:
        import zlib  # noqa: F401
    except ImportError:
        logger.error("zlib is not available - archive extraction disabled")
        return ArchiveSupport.UNAVAILABLE
    return ArchiveSupport.AVAILABLE


# -------------------------- Name policy (shared with preview) --------------------------

_XATTR_MARKERS = ("com.apple.", "ATTR")


def entry_basename(path: str) -> str:
    return path.replace("\\", "/").rstrip("/").split("/")[-1]


def is_mac_metadata(path: str) -> bool:
    file_name = entry_basename(path)
    if file_name.startswith("._") or file_name.startswith(".DS_Store"):
        return True
    if "__MACOSX/" in path or "/._" in path:
        return True
    return any(marker in file_name for marker in _XATTR_MARKERS)


def classify_entry_name(path: str) -> Optional[SkipReason]:
    """Reason an entry would be rejected on its name alone, if any."""
    if ".." in path:
        return SkipReason.PATH_TRAVERSAL
    if is_mac_metadata(path):
        return SkipReason.MAC_METADATA
    return None


def file_priority(file_name: str, category: str) -> int:
    """Ordering hint only (higher first). Never used for policy decisions.

    ``category`` is the coarse bucket from ``MimeSniffingService.category``;
    an ``.html``/``.txt`` name promotes an otherwise unrecognised file.
    """
    lower = file_name.lower()
    if lower.endswith((".html", ".htm")):
        return CATEGORY_PRIORITY["html"]
    if category == "other" and lower.endswith(".txt"):
        return CATEGORY_PRIORITY["text"]
    return CATEGORY_PRIORITY.get(category, 1)


def _member_read_errors() -> Tuple[type, ...]:
    import zlib

    # Wrong password and corrupt data are not distinguishable here
    return (RuntimeError, NotImplementedError, EOFError, zipfile.BadZipFile, zlib.error)


def _open_zip(zip_data: bytes) -> zipfile.ZipFile:
    return zipfile.ZipFile(io.BytesIO(zip_data))


@dataclass
class _ExtractionState:
    """Accounting shared by the outer archive and every nested one."""

    policy: ExtractionPolicy
    pwd: Optional[bytes]
    semaphore: asyncio.Semaphore
    slots: List[Optional[EntryOutcome]] = field(default_factory=list)
    workers: List["asyncio.Task[None]"] = field(default_factory=list)
    seen_hashes: Set[str] = field(default_factory=set)
    admitted: int = 0
    total_bytes: int = 0


# -------------------------- Main Archive Processing --------------------------

class ArchiveProcessor:
    def __init__(
        self,
        content_store: Optional[ContentStoreService] = None,
        mime_sniffer: Optional[MimeSniffingService] = None,
        clam_av: Optional[ClamAVService] = None,
        hashing: Optional[FileHashingService] = None,
        preview_service: Optional[ImagePreviewService] = None,
        archive_support: Optional[ArchiveSupport] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.mime_sniffer = mime_sniffer or MimeSniffingService()
        self.content_store = content_store or ContentStoreService(mime_sniffer=self.mime_sniffer)
        self.clam_av = clam_av or ClamAVService()
        self.hashing = hashing or FileHashingService()
        self.preview_service = preview_service or ImagePreviewService()
        self.archive_support = archive_support or probe_archive_support()
        self.max_workers = max(1, max_workers or settings.ARCHIVE_MAX_WORKERS)

    async def extract(
        self,
        zip_data: bytes,
        password: Optional[str],
        policy: ExtractionPolicy,
    ) -> ExtractionResult:
        """
        Apply ``policy`` to every member of ``zip_data`` and store the accepted ones.

        Raises:
            ArchiveStructureError: the container cannot be opened at all
        """
        if self.archive_support is not ArchiveSupport.AVAILABLE:
            logger.error("Archive extraction requested but archive support is unavailable")
            return ExtractionResult(
                extracted=[],
                skipped=[SkippedEntry.of(None, SkipReason.CAPABILITY_UNAVAILABLE)],
                used_library=False,
            )

        try:
            archive = _open_zip(zip_data)
        except OPEN_ERRORS as e:
            logger.warning(f"Unreadable ZIP container: {e}")
            raise ArchiveStructureError(f"Cannot open ZIP archive: {e}") from e

        state = _ExtractionState(
            policy=policy,
            pwd=password.encode("utf-8") if password else None,
            semaphore=asyncio.Semaphore(self.max_workers),
        )

        try:
            with archive:
                await self._walk_archive(archive, 0, state)
            await asyncio.gather(*state.workers)
        except BaseException:
            for task in state.workers:
                task.cancel()
            raise

        result = ExtractionResult(used_library=True, total_bytes=state.total_bytes)
        for outcome in state.slots:
            if isinstance(outcome, ExtractedEntry):
                result.extracted.append(outcome)
            elif isinstance(outcome, SkippedEntry):
                result.skipped.append(outcome)
            else:
                raise RuntimeError("Archive member finished without an outcome")

        if policy.prioritize_html:
            # Stable: equal priorities keep archive order
            result.extracted.sort(key=lambda entry: entry.priority, reverse=True)

        logger.info(
            f"ZIP extraction finished | accepted={len(result.extracted)} | "
            f"skipped={len(result.skipped)} | bytes={state.total_bytes}"
        )
        return result

    async def _walk_archive(self, archive: zipfile.ZipFile, depth: int, state: _ExtractionState) -> None:
        policy = state.policy
        read_errors = _member_read_errors()
        members = [info for info in archive.infolist() if not info.is_dir()]

        logger.info(f"Extracting ZIP | depth={depth} | members={len(members)} | workers={self.max_workers}")

        for info in members:
            name = info.filename

            name_reason = classify_entry_name(name)
            if name_reason is not None:
                state.slots.append(self._skip(name, name_reason))
                continue

            if policy.max_files is not None and state.admitted >= policy.max_files:
                state.slots.append(self._skip(name, SkipReason.FILE_COUNT_LIMIT))
                continue
            state.admitted += 1

            try:
                file_data = await asyncio.to_thread(
                    self._read_member, archive, info, state.pwd, policy.per_entry_max_bytes
                )
            except read_errors as e:
                logger.debug(f"Member read failed | path={name} | error={e}")
                state.slots.append(self._skip(name, SkipReason.DECRYPT_FAILED))
                continue

            if policy.per_entry_max_bytes is not None and len(file_data) > policy.per_entry_max_bytes:
                state.slots.append(self._skip(name, SkipReason.PER_FILE_SIZE_LIMIT))
                continue

            detected = self.mime_sniffer.detect(file_data, name)
            if detected.mime == ARCHIVE_MIME:
                await self._descend(name, file_data, depth, state)
                continue

            if policy.max_total_bytes is not None and state.total_bytes + len(file_data) > policy.max_total_bytes:
                state.slots.append(self._skip(name, SkipReason.TOTAL_SIZE_LIMIT))
                continue
            state.total_bytes += len(file_data)

            content_hash: Optional[str] = None
            if policy.dedup:
                content_hash = sha256_hex(file_data)
                if content_hash in state.seen_hashes:
                    state.slots.append(self._skip(name, SkipReason.DUPLICATE))
                    continue
                state.seen_hashes.add(content_hash)

            # Released by the worker once the member is settled
            await state.semaphore.acquire()
            slot = len(state.slots)
            state.slots.append(None)
            state.workers.append(asyncio.create_task(
                self._process_member(slot, name, file_data, detected, content_hash, depth, state)
            ))

    async def _descend(self, name: str, zip_data: bytes, depth: int, state: _ExtractionState) -> None:
        """Replace a nested archive member by the outcomes of its own members."""
        if depth + 1 > state.policy.max_depth:
            state.slots.append(self._skip(name, SkipReason.DEPTH_LIMIT))
            return

        try:
            nested = _open_zip(zip_data)
        except OPEN_ERRORS as e:
            logger.warning(f"Unreadable nested ZIP {name}: {e}")
            state.slots.append(self._skip(name, SkipReason.CORRUPTED_ARCHIVE))
            return

        logger.info(f"Descending into nested archive | path={name} | depth={depth + 1}")
        with nested:
            await self._walk_archive(nested, depth + 1, state)

    @staticmethod
    def _read_member(
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        pwd: Optional[bytes],
        limit: Optional[int],
    ) -> bytes:
        # Never inflate more than limit + 1 bytes of a single member
        with archive.open(info, pwd=pwd) as fh:
            if limit is None:
                return fh.read()
            return fh.read(limit + 1)

    @staticmethod
    def _skip(path: str, reason: SkipReason, detail: Optional[str] = None) -> SkippedEntry:
        skipped = SkippedEntry.of(path, reason, detail)
        logger.warning(f"Skipping archive member | path={path} | reason={skipped.reason}")
        return skipped

    async def _process_member(
        self,
        slot: int,
        name: str,
        file_data: bytes,
        detected: DetectedType,
        content_hash: Optional[str],
        depth: int,
        state: _ExtractionState,
    ) -> None:
        try:
            state.slots[slot] = await self._accept_member(
                name, file_data, detected, content_hash, depth, state.policy
            )
        except Exception:
            logger.error(f"Unexpected failure processing archive member {name}", exc_info=True)
            state.slots[slot] = self._skip(name, SkipReason.STORE_FAILED)
        finally:
            state.semaphore.release()

    async def _accept_member(
        self,
        name: str,
        file_data: bytes,
        detected: DetectedType,
        content_hash: Optional[str],
        depth: int,
        policy: ExtractionPolicy,
    ) -> EntryOutcome:
        if detected.mime not in policy.allowed_mime_set:
            return self._skip(name, SkipReason.DISALLOWED_MIME, detected.mime)

        if policy.enable_virus_scan:
            verdict = await self.clam_av.scan(file_data, filename=name)
            if not verdict.is_clean:
                return self._skip(name, SkipReason.VIRUS, verdict.code)

        file_name = entry_basename(name) or "file"
        if content_hash is None:
            content_hash = await self.hashing.hash_file(file_data)

        try:
            asset = await self.content_store.save(
                file_data, file_name, detected_mime=detected.mime, content_hash=content_hash
            )
        except StorageError as e:
            logger.error(f"Failed to commit archive member {name}: {e}")
            return self._skip(name, SkipReason.STORE_FAILED)

        preview = None
        preview_url = None
        if policy.generate_previews and detected.mime.startswith("image/") and detected.mime != "image/svg+xml":
            thumb = await asyncio.to_thread(self.preview_service.make_preview, file_data)
            if thumb:
                try:
                    preview = await self.content_store.save(
                        thumb, f"preview_{asset.sanitized_name}.jpg", detected_mime="image/jpeg"
                    )
                    preview_url = self.content_store.public_url(preview.id, preview.sanitized_name)
                except StorageError as e:
                    logger.warning(f"Preview not stored for {name}: {e}")

        return ExtractedEntry(
            asset=asset,
            original_path=name,
            url=self.content_store.public_url(asset.id, asset.sanitized_name),
            priority=file_priority(file_name, self.mime_sniffer.category(detected.mime)),
            depth=depth,
            preview=preview,
            preview_url=preview_url,
        )
