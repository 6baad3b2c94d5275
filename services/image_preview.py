import io
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from utils.logger import get_logger

logger = get_logger(__name__)


class ImagePreviewService:
    """Renders small JPEG thumbnails for stored raster images."""

    PREVIEW_WIDTH = 400
    JPEG_QUALITY = 70
    MAX_IMAGE_PIXELS = 178956970  # ~50000x50000 - prevent decompression bombs

    def __init__(self, width: Optional[int] = None) -> None:
        self.width = width or self.PREVIEW_WIDTH
        Image.MAX_IMAGE_PIXELS = self.MAX_IMAGE_PIXELS

    def make_preview(self, file_data: bytes) -> Optional[bytes]:
        """
        Return a JPEG thumbnail no wider than ``self.width``, or None when the
        bytes cannot be decoded as an image. Never raises for bad input.
        """
        try:
            with Image.open(io.BytesIO(file_data)) as img:
                img = ImageOps.exif_transpose(img)
                img = img.convert("RGB")
                if img.width > self.width:
                    height = max(1, round(img.height * self.width / img.width))
                    img = img.resize((self.width, height))
                out = io.BytesIO()
                img.save(out, format="JPEG", quality=self.JPEG_QUALITY)
                return out.getvalue()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.debug(f"Preview generation failed: {e}")
            return None
