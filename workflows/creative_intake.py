from typing import Any, Dict, Iterable, List, Optional

from config.settings import settings
from models.assets import BulkDeleteOutcome, ExtractionPolicy, ExtractionResult
from processors.archive_processor import ArchiveProcessor, ArchiveSupport, probe_archive_support
from processors.zip_preview import ZipPreview, ZipPreviewProcessor
from services.asset_index import AssetIndex, AssetIndexRegistry
from services.asset_rewriter import AssetRewriterService
from services.clam_av import ClamAVService
from services.content_store import ContentStoreService
from services.file_hashing import FileHashingService
from services.image_preview import ImagePreviewService
from services.mime_sniffing import MimeSniffingService
from utils.errors import AssetNotFoundError
from utils.logger import get_logger

logger = get_logger(__name__)


def default_policy(**overrides: Any) -> ExtractionPolicy:
    """Extraction policy built from settings, with per-call overrides."""
    values: Dict[str, Any] = {
        "allowed_mime_set": frozenset(settings.ALLOWED_MIME_TYPES),
        "enable_virus_scan": settings.ENABLE_VIRUS_SCAN,
        "per_entry_max_bytes": settings.PER_FILE_MAX_BYTES,
        "prioritize_html": True,
        "max_files": settings.ARCHIVE_MAX_FILES,
        "max_total_bytes": settings.ARCHIVE_MAX_TOTAL_BYTES,
        "max_depth": settings.ARCHIVE_MAX_DEPTH,
    }
    values.update(overrides)
    return ExtractionPolicy(**values)


class CreativeIntakeWorkflow:
    def __init__(
        self,
        content_store: Optional[ContentStoreService] = None,
        clam_av: Optional[ClamAVService] = None,
        index_registry: Optional[AssetIndexRegistry] = None,
        archive_support: Optional[ArchiveSupport] = None,
    ):
        # Initialize services
        self.mime_sniffing_service = MimeSniffingService()
        self.file_hashing_service = FileHashingService()
        self.content_store = content_store or ContentStoreService(mime_sniffer=self.mime_sniffing_service)
        self.clam_av_service = clam_av or ClamAVService()
        self.asset_rewriter = AssetRewriterService()
        self.index_registry = index_registry or AssetIndexRegistry()
        self.archive_support = archive_support or probe_archive_support()

        # Initialize archive processors
        self.archive_processor = ArchiveProcessor(
            content_store=self.content_store,
            mime_sniffer=self.mime_sniffing_service,
            clam_av=self.clam_av_service,
            hashing=self.file_hashing_service,
            preview_service=ImagePreviewService(),
            archive_support=self.archive_support,
        )
        self.zip_preview_processor = ZipPreviewProcessor()

    async def ingest_file(
        self,
        file_data: bytes,
        file_name: str,
        policy: Optional[ExtractionPolicy] = None,
    ) -> Dict[str, Any]:
        """Sniff, hash, optionally scan and store one standalone upload."""
        policy = policy or default_policy()
        detected = self.mime_sniffing_service.detect(file_data, file_name)
        file_hash = await self.file_hashing_service.hash_file(file_data)

        result: Dict[str, Any] = {
            "file_name": file_name,
            "mime_type": detected.mime,
            "hash": file_hash,
            "size": len(file_data),
        }

        if detected.mime not in policy.allowed_mime_set:
            result["status"] = "rejected"
            result["reason"] = f"disallowed-mime:{detected.mime}"
            logger.warning(f"Upload rejected | file={file_name} | reason={result['reason']}")
            return result

        if policy.per_entry_max_bytes is not None and len(file_data) > policy.per_entry_max_bytes:
            result["status"] = "rejected"
            result["reason"] = "per-file-size-limit"
            return result

        if policy.enable_virus_scan:
            verdict = await self.clam_av_service.scan(file_data, filename=file_name)
            if not verdict.is_clean:
                result["status"] = "rejected"
                result["reason"] = f"virus:{verdict.code}"
                return result

        asset = await self.content_store.save(
            file_data, file_name, detected_mime=detected.mime, content_hash=file_hash
        )
        result["status"] = "stored"
        result["asset"] = asset
        result["url"] = self.content_store.public_url(asset.id, asset.sanitized_name)
        return result

    def preview_archive(self, zip_data: bytes, max_entries: Optional[int] = None) -> Optional[ZipPreview]:
        return self.zip_preview_processor.preview(zip_data, max_entries=max_entries)

    async def ingest_archive(
        self,
        upload_id: str,
        zip_data: bytes,
        password: Optional[str] = None,
        policy: Optional[ExtractionPolicy] = None,
    ) -> ExtractionResult:
        """
        Extract an archive and register its asset index under ``upload_id``.

        Raises:
            ArchiveStructureError: the archive container is unreadable
        """
        result = await self.archive_processor.extract(zip_data, password, policy or default_policy())
        if result.extracted:
            self.index_registry.put(upload_id, AssetIndex.build(result.extracted))
        logger.info(
            f"Archive ingested | upload_id={upload_id} | accepted={len(result.extracted)} | "
            f"skipped={len(result.skipped)}"
        )
        return result

    async def render_html(self, upload_id: str, asset_id: str, base_url: Optional[str] = None) -> str:
        """Return a stored HTML asset with its references rewritten for serving."""
        index = self.index_registry.get(upload_id)
        if index is None:
            raise AssetNotFoundError(f"No asset index for upload {upload_id}")

        for indexed in index.by_path.values():
            if indexed.asset.id == asset_id:
                break
        else:
            raise AssetNotFoundError(f"Asset {asset_id} is not part of upload {upload_id}")

        if indexed.asset.detected_mime != "text/html":
            raise AssetNotFoundError(f"Asset {asset_id} is not an HTML document")

        raw = await self.content_store.read(asset_id, indexed.asset.sanitized_name)
        html = raw.decode("utf-8", errors="replace")
        return self.asset_rewriter.rewrite(
            html,
            base_url or self.content_store.public_prefix,
            index=index,
            html_path=indexed.path,
        )

    async def cleanup_upload(self, upload_id: str, asset_ids: Optional[Iterable[str]] = None) -> List[BulkDeleteOutcome]:
        """Evict the upload's index and delete its stored assets."""
        index = self.index_registry.get(upload_id)
        ids: List[str] = list(asset_ids or [])
        if index is not None:
            ids.extend(asset.id for asset in index.assets() if asset.id not in ids)
        self.index_registry.remove(upload_id)
        return await self.content_store.bulk_delete(ids)

    async def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": "creative-intake",
            "archive_support": self.archive_support.value,
            "clamav": await self.clam_av_service.health_check(),
        }

