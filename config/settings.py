from pydantic_settings import BaseSettings
from typing import ClassVar, List, Optional


class Settings(BaseSettings):
    # Content store
    STORAGE_ROOT: str = "/tmp/creatives"
    PUBLIC_FILES_PREFIX: str = "/api/files"
    STORAGE_IO_TIMEOUT_SECONDS: float = 30.0

    # ClamAV daemon (clamd INSTREAM)
    CLAMAV_HOST: str = "127.0.0.1"
    CLAMAV_PORT: int = 3310
    CLAMAV_TIMEOUT_SECONDS: float = 15.0
    CLAMAV_CHUNK_SIZE: int = 64 * 1024
    ENABLE_VIRUS_SCAN: bool = True

    # Extraction policy defaults
    ALLOWED_MIME_TYPES: List[str] = [
        "text/html",
        "image/png",
        "image/jpeg",
        "image/gif",
        "image/webp",
        "image/svg+xml",
        "application/pdf",
    ]
    PER_FILE_MAX_BYTES: Optional[int] = 25 * 1024 * 1024
    ARCHIVE_MAX_FILES: Optional[int] = 500
    ARCHIVE_MAX_TOTAL_BYTES: Optional[int] = 200 * 1024 * 1024
    ARCHIVE_MAX_WORKERS: int = 4
    ARCHIVE_MAX_DEPTH: int = 1
    ZIP_PREVIEW_MAX_ENTRIES: int = 2000

    # Per-upload asset index registry
    ASSET_INDEX_TTL_SECONDS: float = 3600.0
    ASSET_INDEX_MAX_UPLOADS: int = 256

    LOG_LEVEL: str = "INFO"

    model_config: ClassVar = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }


settings = Settings()
