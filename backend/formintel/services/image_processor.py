"""
Image preparation service: compression/resizing and splitting of tall images
into overlapping vertical sections.
"""
import io
import math
import logging
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple
from PIL import Image, UnidentifiedImageError

from formintel.config import Config
from formintel.services.field_extraction.fields import ImageSection

logger = logging.getLogger(__name__)

# Pillow format name and MIME type per output format
OUTPUT_FORMATS = {
    'jpeg': ('JPEG', 'image/jpeg'),
    'jpg': ('JPEG', 'image/jpeg'),
    'png': ('PNG', 'image/png'),
    'webp': ('WEBP', 'image/webp'),
}

# Pages below both thresholds are simple enough for low-detail vision input
SIMPLE_IMAGE_MAX_BYTES = 1024 * 1024
SIMPLE_IMAGE_MAX_PIXELS = 4_000_000


@dataclass
class CompressionResult:
    buffer: bytes
    mime_type: str
    compression_ratio: float
    original_size: int
    compressed_size: int
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mime_type': self.mime_type,
            'compression_ratio': self.compression_ratio,
            'original_size': self.original_size,
            'compressed_size': self.compressed_size,
            'width': self.width,
            'height': self.height
        }


def get_compression_settings(mime_type: Optional[str]) -> Dict[str, Any]:
    """
    Compression settings for a source MIME type.

    PNG sources stay PNG (screenshots and line art compress badly as JPEG);
    everything else is re-encoded as JPEG.
    """
    if mime_type and 'png' in mime_type.lower():
        return {'max_width': 2048, 'max_height': 2048, 'quality': 90, 'format': 'png'}
    return {'max_width': 2048, 'max_height': 2048, 'quality': 85, 'format': 'jpeg'}


def detect_mime_type(buffer: bytes) -> str:
    """Sniff the MIME type from magic bytes, defaulting to PNG."""
    if buffer.startswith(b'\xff\xd8\xff'):
        return 'image/jpeg'
    if buffer.startswith(b'\x89PNG'):
        return 'image/png'
    if buffer[:4] == b'RIFF' and buffer[8:12] == b'WEBP':
        return 'image/webp'
    if buffer[:3] == b'GIF':
        return 'image/gif'
    return 'image/png'


def quick_complexity_check(buffer: bytes, width: Optional[int], height: Optional[int]) -> str:
    """
    Vision detail level for an image: 'low' for small simple pages, else 'high'.
    """
    if width is None or height is None:
        return 'high'
    if len(buffer) < SIMPLE_IMAGE_MAX_BYTES and width * height < SIMPLE_IMAGE_MAX_PIXELS:
        return 'low'
    return 'high'


class ImageProcessor:
    """Service for compressing images and splitting tall ones into sections."""

    def __init__(
        self,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
        quality: Optional[int] = None,
        split_max_height: Optional[int] = None,
        split_overlap: Optional[int] = None
    ):
        self.max_width = max_width or Config.IMAGE_MAX_WIDTH
        self.max_height = max_height or Config.IMAGE_MAX_HEIGHT
        self.quality = quality or Config.IMAGE_QUALITY
        self.split_max_height = split_max_height or Config.IMAGE_SPLIT_MAX_HEIGHT
        self.split_overlap = Config.IMAGE_SPLIT_OVERLAP if split_overlap is None else split_overlap

    def get_dimensions(self, buffer: bytes) -> Optional[Tuple[int, int]]:
        """Image (width, height), or None if the buffer is not a readable image."""
        try:
            with Image.open(io.BytesIO(buffer)) as image:
                return image.size
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Could not read image metadata: {e}")
            return None

    def compress(
        self,
        buffer: bytes,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
        quality: Optional[int] = None,
        format: str = 'jpeg'
    ) -> CompressionResult:
        """
        Resize (only if larger than the bounds) and re-encode an image.

        Compression failure is not fatal: the original buffer comes back with
        a compression ratio of 0.

        Args:
            buffer: Source image bytes
            max_width: Width bound in pixels
            max_height: Height bound in pixels
            quality: Encoder quality (1-100)
            format: 'jpeg', 'png' or 'webp'

        Returns:
            CompressionResult
        """
        max_width = max_width or self.max_width
        max_height = max_height or self.max_height
        quality = quality or self.quality
        original_size = len(buffer)

        try:
            pil_format, mime_type = OUTPUT_FORMATS[format.lower()]

            with Image.open(io.BytesIO(buffer)) as source:
                image = source.copy()

            original_width, original_height = image.size
            if original_width > max_width or original_height > max_height:
                # thumbnail() keeps aspect ratio and never enlarges
                image.thumbnail((max_width, max_height), Image.LANCZOS)
                logger.info(
                    f"Resized image {original_width}x{original_height} -> "
                    f"{image.size[0]}x{image.size[1]}"
                )

            if pil_format == 'JPEG' and image.mode not in ('RGB', 'L'):
                image = image.convert('RGB')

            output = io.BytesIO()
            save_kwargs: Dict[str, Any] = {'optimize': True}
            if pil_format in ('JPEG', 'WEBP'):
                save_kwargs['quality'] = quality
            image.save(output, format=pil_format, **save_kwargs)
            compressed = output.getvalue()

            ratio = round((1 - len(compressed) / original_size) * 100, 1) if original_size else 0.0
            logger.info(
                f"Compressed image: {original_size} -> {len(compressed)} bytes ({ratio}% reduction)"
            )
            return CompressionResult(
                buffer=compressed,
                mime_type=mime_type,
                compression_ratio=ratio,
                original_size=original_size,
                compressed_size=len(compressed),
                width=image.size[0],
                height=image.size[1]
            )

        except (KeyError, UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Image compression failed, using original: {e}")
            return CompressionResult(
                buffer=buffer,
                mime_type='image/png',
                compression_ratio=0.0,
                original_size=original_size,
                compressed_size=original_size
            )

    def compress_for_mime_type(self, buffer: bytes, mime_type: Optional[str] = None) -> CompressionResult:
        """Compress using the settings for the (sniffed if omitted) source MIME type."""
        settings = get_compression_settings(mime_type or detect_mime_type(buffer))
        return self.compress(buffer, **settings)

    def split(
        self,
        buffer: bytes,
        max_height: Optional[int] = None,
        overlap: Optional[int] = None
    ) -> List[ImageSection]:
        """
        Split an image taller than ``max_height`` into overlapping sections.

        Every non-final section is ``floor((H - overlap) / n) + overlap`` tall
        and starts ``section_height - overlap`` below the previous one; the
        final section runs to the bottom so no pixel rows are dropped.
        Never raises: unreadable images come back as one section of height 0.
        """
        max_height = max_height or self.split_max_height
        overlap = self.split_overlap if overlap is None else overlap

        try:
            with Image.open(io.BytesIO(buffer)) as source:
                image = source.copy()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Could not read image for splitting, using full image (height 0): {e}")
            return [ImageSection(buffer=buffer, y_offset=0, height=0, section_index=0, total_sections=1)]

        width, height = image.size
        if height <= max_height:
            logger.info(f"Image height {height}px within {max_height}px, no split needed")
            return [ImageSection(buffer=buffer, y_offset=0, height=height, section_index=0, total_sections=1)]

        num_sections = math.ceil(height / max_height)
        section_height = (height - overlap) // num_sections + overlap
        step = section_height - overlap

        logger.info(
            f"Splitting {width}x{height} image into {num_sections} sections "
            f"of ~{section_height}px with {overlap}px overlap"
        )

        sections: List[ImageSection] = []
        try:
            for index in range(num_sections):
                y_offset = index * step
                is_last = index == num_sections - 1
                current_height = height - y_offset if is_last else section_height

                output = io.BytesIO()
                image.crop((0, y_offset, width, y_offset + current_height)).save(output, format='PNG')

                sections.append(ImageSection(
                    buffer=output.getvalue(),
                    y_offset=y_offset,
                    height=current_height,
                    section_index=index,
                    total_sections=num_sections,
                    overlap_with_next=0 if is_last else overlap
                ))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to crop image sections, using full image: {e}")
            return [ImageSection(buffer=buffer, y_offset=0, height=height, section_index=0, total_sections=1)]

        return sections
