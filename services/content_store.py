import asyncio
import os
import re
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from config.settings import settings
from models.assets import BulkDeleteOutcome, DeleteOutcome, StoredAsset
from services.file_hashing import sha256_hex
from services.mime_sniffing import MimeSniffingService
from utils.errors import AssetNotFoundError, PathTraversalError, StorageError
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ContentStoreService:
    """
    Write-once filesystem store partitioned by generated id.

    Layout: ``{root}/{id}/{sanitized_name}``. Ids are fresh UUID4 strings and
    are never reused. Every path handed to the filesystem is re-resolved and
    checked to sit strictly inside the root first.
    """

    MAX_NAME_LENGTH = 255
    DEFAULT_NAME = "file"

    _UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")
    _ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

    def __init__(
        self,
        root: Optional[str] = None,
        public_prefix: Optional[str] = None,
        io_timeout: Optional[float] = None,
        mime_sniffer: Optional[MimeSniffingService] = None,
    ) -> None:
        self.root = Path(root or settings.STORAGE_ROOT).resolve()
        self.public_prefix = (public_prefix or settings.PUBLIC_FILES_PREFIX).rstrip("/")
        self.io_timeout = io_timeout if io_timeout is not None else settings.STORAGE_IO_TIMEOUT_SECONDS
        self.mime_sniffer = mime_sniffer or MimeSniffingService()

        logger.info(
            f"ContentStoreService initialized | root={self.root} | "
            f"prefix={self.public_prefix} | io_timeout={self.io_timeout}s"
        )

    # -------------------------- path composition --------------------------

    @classmethod
    def sanitize_name(cls, original_name: str) -> str:
        """Replace every character outside ``[A-Za-z0-9._-]`` with ``_``."""
        base = (original_name or "").replace("\\", "/").split("/")[-1]
        safe = cls._UNSAFE_NAME_RE.sub("_", base)[: cls.MAX_NAME_LENGTH]
        if not safe or safe in (".", ".."):
            return cls.DEFAULT_NAME
        return safe

    @classmethod
    def is_valid_id(cls, asset_id: str) -> bool:
        return bool(cls._ID_RE.match(asset_id or ""))

    def dir(self, asset_id: str) -> Path:
        """Directory holding one id's files. Does not touch disk."""
        if not self.is_valid_id(asset_id):
            raise PathTraversalError(f"Invalid asset id: {asset_id!r}")
        return self.root / asset_id

    def path(self, asset_id: str, name: str) -> Path:
        """Location of one stored file. Does not touch disk."""
        return self.dir(asset_id) / self.sanitize_name(name)

    def public_url(self, asset_id: str, name: str) -> str:
        return f"{self.public_prefix}/{asset_id}/{name}"

    def ensure_contained(self, candidate: Path) -> Path:
        """
        Resolve ``candidate`` and require the store root as a strict prefix.

        Raises:
            PathTraversalError: if the resolved path is the root itself or
                lies outside it (including via symlinks).
        """
        resolved = Path(os.path.realpath(candidate))
        if resolved == self.root or self.root not in resolved.parents:
            logger.warning(f"Path traversal blocked | candidate={candidate} | resolved={resolved}")
            raise PathTraversalError(f"Path escapes store root: {candidate}")
        return resolved

    def resolve_served_path(self, asset_id: str, relative_path: str) -> Path:
        """
        Map an externally supplied ``/{id}/{path}`` onto a file for serving.

        Unlike ``path()``, the caller's path is joined as given (it may name
        a nested file), so containment is always re-validated after
        resolution.
        """
        candidate = self.dir(asset_id).joinpath(*[p for p in relative_path.split("/") if p])
        return self.ensure_contained(candidate)

    # -------------------------- I/O helpers --------------------------

    async def _run_io(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.io_timeout)
        except asyncio.TimeoutError as e:
            raise StorageError(f"Filesystem operation timed out after {self.io_timeout}s") from e

    # -------------------------- operations --------------------------

    async def save(
        self,
        file_data: bytes,
        original_name: str,
        detected_mime: Optional[str] = None,
        content_hash: Optional[str] = None,
    ) -> StoredAsset:
        """
        Persist ``file_data`` under a fresh id. Never overwrites.

        Raises:
            StorageError: if the write fails or times out
        """
        asset_id = str(uuid.uuid4())
        safe_name = self.sanitize_name(original_name)
        target = self.ensure_contained(self.path(asset_id, safe_name))

        mime = detected_mime or self.mime_sniffer.detect(file_data, original_name).mime
        digest = content_hash or sha256_hex(file_data)

        try:
            await self._run_io(self._write_exclusive, target, file_data)
        except OSError as e:
            logger.error(f"Failed to store {safe_name} under {asset_id}: {e}", exc_info=True)
            raise StorageError(f"Failed to write {safe_name}: {e}") from e

        logger.info(f"Stored asset | id={asset_id} | name={safe_name} | size={len(file_data)} | mime={mime}")
        return StoredAsset(
            id=asset_id,
            sanitized_name=safe_name,
            size_bytes=len(file_data),
            detected_mime=mime,
            content_hash=digest,
        )

    @staticmethod
    def _write_exclusive(target: Path, file_data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "xb") as fh:
            fh.write(file_data)

    async def read(self, asset_id: str, name: str) -> bytes:
        """Read a stored file back. Raises AssetNotFoundError when missing."""
        target = self.resolve_served_path(asset_id, name)
        try:
            return await self._run_io(target.read_bytes)
        except FileNotFoundError as e:
            raise AssetNotFoundError(f"{asset_id}/{name}") from e
        except IsADirectoryError as e:
            raise AssetNotFoundError(f"{asset_id}/{name}") from e

    async def exists(self, asset_id: str) -> bool:
        return await self._run_io(self.dir(asset_id).is_dir)

    async def delete_tree(self, asset_id: str) -> DeleteOutcome:
        """
        Remove everything stored under ``asset_id``.

        Sizes are summed before removal. A missing directory is not an
        error and yields an empty outcome; per-file failures are collected
        in ``errors`` rather than aborting the walk.
        """
        target = self.dir(asset_id)
        outcome = await self._run_io(self._delete_tree_sync, target)
        if outcome.errors:
            logger.warning(f"Partial delete | id={asset_id} | errors={outcome.errors}")
        logger.info(
            f"Deleted asset tree | id={asset_id} | files={len(outcome.deleted_paths)} | "
            f"bytes={outcome.bytes_reclaimed}"
        )
        return outcome

    def _delete_tree_sync(self, target: Path) -> DeleteOutcome:
        outcome = DeleteOutcome()
        if not target.is_dir():
            return outcome

        # Bottom-up so every directory is empty by the time it is removed
        for dirpath, dirnames, filenames in os.walk(target, topdown=False):
            for filename in filenames:
                file_path = Path(dirpath) / filename
                try:
                    size = file_path.lstat().st_size
                    file_path.unlink()
                except OSError as e:
                    outcome.errors.append(f"{file_path}: {e}")
                    continue
                outcome.deleted_paths.append(str(file_path))
                outcome.bytes_reclaimed += size

            for dirname in dirnames:
                sub_dir = Path(dirpath) / dirname
                try:
                    if sub_dir.is_symlink():
                        sub_dir.unlink()
                    else:
                        sub_dir.rmdir()
                except OSError as e:
                    outcome.errors.append(f"{sub_dir}: {e}")

        try:
            target.rmdir()
        except OSError as e:
            outcome.errors.append(f"{target}: {e}")
        return outcome

    async def bulk_delete(self, asset_ids: Iterable[str]) -> List[BulkDeleteOutcome]:
        """Delete several ids, isolating each id's failure from the rest."""
        results: List[BulkDeleteOutcome] = []
        for asset_id in asset_ids:
            if not self.is_valid_id(asset_id):
                results.append(BulkDeleteOutcome(id=asset_id, ok=False, reason="invalid-id"))
                continue
            try:
                if not await self.exists(asset_id):
                    results.append(BulkDeleteOutcome(id=asset_id, ok=False, reason="not-found"))
                    continue
                outcome = await self.delete_tree(asset_id)
            except StorageError as e:
                logger.error(f"Bulk delete failed for {asset_id}: {e}")
                results.append(BulkDeleteOutcome(id=asset_id, ok=False, reason="io-error", errors=[str(e)]))
                continue
            results.append(
                BulkDeleteOutcome(
                    id=asset_id,
                    ok=True,
                    deleted=len(outcome.deleted_paths),
                    bytes_reclaimed=outcome.bytes_reclaimed,
                    errors=outcome.errors,
                )
            )
        return results

    async def inventory(self) -> List[Dict[str, Any]]:
        """List every stored id with its file names and total size."""
        return await self._run_io(self._inventory_sync)

    def _inventory_sync(self) -> List[Dict[str, Any]]:
        if not self.root.is_dir():
            return []
        items: List[Dict[str, Any]] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not self.is_valid_id(entry.name):
                continue
            files = sorted(p for p in entry.rglob("*") if p.is_file())
            items.append({
                "id": entry.name,
                "files": [str(p.relative_to(entry)) for p in files],
                "total_bytes": sum(p.stat().st_size for p in files),
            })
        return items
