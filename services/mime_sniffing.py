"""
MIME Sniffing Service - content-first type detection

The detected MIME depends only on the bytes of the buffer. The caller's
filename is consulted in exactly one case: when no signature or textual
marker matched and the name ends in .html/.htm, the buffer is treated as
HTML. A claimed Content-Type is never an input.

Detection order:
1. filetype library (binary magic signatures)
2. built-in signature table (PNG, JPEG, GIF, PDF, ZIP)
3. textual sniffing of the leading bytes (SVG, HTML)
4. .html/.htm filename tiebreak
5. application/octet-stream
"""

import re
from typing import Dict, Optional, Tuple

import filetype

from models.assets import DetectedType
from utils.logger import get_logger

logger = get_logger(__name__)


class MimeSniffingService:
    """Classifies a byte buffer's true MIME type from its content."""

    FALLBACK_MIME = "application/octet-stream"

    # Bytes of leading text inspected for markup markers
    TEXT_SAMPLE_SIZE = 512

    # (mime, extension, leading magic bytes)
    SIGNATURES: Tuple[Tuple[str, str, bytes], ...] = (
        ("image/png", "png", b"\x89PNG\r\n\x1a\n"),
        ("image/jpeg", "jpg", b"\xff\xd8\xff"),
        ("image/gif", "gif", b"GIF87a"),
        ("image/gif", "gif", b"GIF89a"),
        ("application/pdf", "pdf", b"%PDF"),
        ("application/zip", "zip", b"PK\x03"),
        ("application/zip", "zip", b"PK\x05"),
        ("application/zip", "zip", b"PK\x07"),
    )

    MIME_TO_CATEGORY: Dict[str, str] = {
        "text/html": "html",
        "image/": "image",
        "application/pdf": "pdf",
        "text/plain": "text",
        "application/zip": "archive",
    }

    _HTML_NAME_RE = re.compile(r"\.(html?)$", re.IGNORECASE)
    _SVG_RE = re.compile(r"^<svg[\s>]")
    _XML_SVG_RE = re.compile(r"^<\?xml[^>]*\?>\s*(<!--.*?-->\s*)*(<!doctype svg[^>]*>\s*)?<svg[\s>]", re.DOTALL)

    def detect(self, file_data: bytes, original_name: Optional[str] = None) -> DetectedType:
        """
        Detect the MIME type of ``file_data``.

        Args:
            file_data: Raw bytes to classify
            original_name: Optional filename, used only for the HTML tiebreak

        Returns:
            DetectedType with mime and extension (extension may be None)
        """
        detected = (
            self._detect_with_filetype(file_data)
            or self._detect_with_signatures(file_data)
            or self._detect_text_format(file_data)
        )
        if detected:
            return detected

        if original_name:
            match = self._HTML_NAME_RE.search(original_name)
            if match:
                logger.debug(f"HTML tiebreak by filename | name={original_name}")
                return DetectedType("text/html", match.group(1).lower())

        return DetectedType(self.FALLBACK_MIME, None)

    def category(self, mime: str) -> str:
        """Map a MIME type onto a coarse category used for ordering."""
        for prefix, category in self.MIME_TO_CATEGORY.items():
            if mime == prefix or (prefix.endswith("/") and mime.startswith(prefix)):
                return category
        return "other"

    def _detect_with_filetype(self, file_data: bytes) -> Optional[DetectedType]:
        if not file_data:
            return None
        try:
            kind = filetype.guess(file_data[:8192])
        except (TypeError, ValueError) as e:
            logger.warning(f"filetype detection failed: {e}")
            return None
        if kind is None:
            return None
        return DetectedType(kind.mime, kind.extension)

    def _detect_with_signatures(self, file_data: bytes) -> Optional[DetectedType]:
        for mime, ext, magic in self.SIGNATURES:
            if file_data.startswith(magic):
                return DetectedType(mime, ext)
        return None

    def _detect_text_format(self, file_data: bytes) -> Optional[DetectedType]:
        head = file_data[:self.TEXT_SAMPLE_SIZE]
        if head.startswith(b"\xef\xbb\xbf"):
            head = head[3:]
        text = head.decode("utf-8", errors="ignore").strip().lower()
        if not text:
            return None

        if self._SVG_RE.match(text) or self._XML_SVG_RE.match(text):
            return DetectedType("image/svg+xml", "svg")
        if text.startswith("<!doctype html") or text.startswith("<html"):
            return DetectedType("text/html", "html")
        return None
