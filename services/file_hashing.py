import asyncio
import hashlib
from pathlib import Path
from typing import Union


def sha256_hex(file_data: bytes) -> str:
    """Compute the SHA-256 hex digest of ``file_data``."""
    return hashlib.sha256(file_data).hexdigest()


class FileHashingService:
    """
    Service for computing file hashes
    """

    # Buffers above this size are hashed off the event loop
    INLINE_HASH_LIMIT = 1024 * 1024
    READ_CHUNK_SIZE = 1024 * 1024

    async def hash_file(self, file_data: bytes) -> str:
        """
        Compute SHA-256 hash of file data
        """
        if len(file_data) <= self.INLINE_HASH_LIMIT:
            return sha256_hex(file_data)
        return await asyncio.to_thread(sha256_hex, file_data)

    def hash_path(self, path: Union[str, Path]) -> str:
        """Stream a stored file through SHA-256 for audit checks."""
        digest = hashlib.sha256()
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(self.READ_CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()
