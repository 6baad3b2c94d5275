from typing import List, Optional

from pydantic import BaseModel, Field


class StoredAssetModel(BaseModel):
    id: str
    sanitized_name: str
    size_bytes: int
    detected_mime: str
    content_hash: str


class UploadResponse(BaseModel):
    status: str
    file_name: str
    mime_type: str
    hash: str
    size: int
    reason: Optional[str] = None
    asset: Optional[StoredAssetModel] = None
    url: Optional[str] = None


class ExtractedEntryModel(BaseModel):
    asset: StoredAssetModel
    original_path: str
    url: str
    priority: int
    depth: int = 0
    preview_url: Optional[str] = None


class SkippedEntryModel(BaseModel):
    path: Optional[str] = None
    reason: str


class ExtractionResponse(BaseModel):
    upload_id: str
    extracted: List[ExtractedEntryModel]
    skipped: List[SkippedEntryModel]
    used_library: bool
    total_bytes: int


class PreviewEntryModel(BaseModel):
    name: str
    compressed_size: int
    uncompressed_size: int
    crc32: int
    flags: int
    method: int
    encrypted: bool
    is_directory: bool
    compression_ratio: Optional[float] = None
    skip_reason: Optional[str] = None


class PreviewTotalsModel(BaseModel):
    files: int
    dirs: int
    compressed: int
    uncompressed: int
    overall_ratio: Optional[float] = None
    total_entries: int
    truncated: bool


class HighExpansionEntryModel(BaseModel):
    name: str
    ratio: float
    uncompressed_size: int
    compressed_size: int


class ZipPreviewResponse(BaseModel):
    entries: List[PreviewEntryModel]
    totals: PreviewTotalsModel
    high_expansion_entries: List[HighExpansionEntryModel]
    high_overall_expansion: bool


class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class BulkDeleteItem(BaseModel):
    id: str
    ok: bool
    deleted: int = 0
    bytes_reclaimed: int = 0
    reason: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class BulkDeleteResponse(BaseModel):
    results: List[BulkDeleteItem]
