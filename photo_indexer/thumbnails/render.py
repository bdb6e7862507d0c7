"""
Preview rendering: decode, orient, downscale, re-encode.

The primary path decodes the file itself with Pillow. When that fails
(corrupt data, RAW/HEIC formats Pillow cannot read) the fallback uses the
JPEG preview embedded in the file's EXIF block.
"""
import io
import os
import logging
import uuid
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps

from .. import config
from ..exceptions import ThumbnailError
from ..metadata.extract import MetadataExtractor


class ThumbnailRenderer:
    def __init__(self,
                 size: int = config.THUMB_SIZE,
                 quality: int = config.THUMB_QUALITY,
                 extractor: Optional[MetadataExtractor] = None):
        self.size = size
        self.quality = quality
        self.extractor = extractor or MetadataExtractor()

    def render(self, src: Path, dest: Path) -> Optional[Tuple[int, int]]:
        """
        Writes a preview of `src` to `dest`.

        Returns the natural (oriented) pixel size when the primary decode
        succeeded, None when only the embedded preview was available.
        Raises ThumbnailError when neither path produced a preview.
        """
        try:
            return self._render_primary(src, dest)
        except Exception as e:
            logging.debug(f"Primary decode failed for {src}: {e}")

        try:
            self._render_embedded(src, dest)
            logging.debug(f"Used embedded EXIF preview for {src}")
            return None
        except Exception as e:
            raise ThumbnailError(f"{src}: no decodable image data ({e})") from e

    def _render_primary(self, src: Path, dest: Path) -> Tuple[int, int]:
        with Image.open(src) as im:
            oriented = ImageOps.exif_transpose(im)
            natural = oriented.size
            self._save(oriented, dest)
        return natural

    def _render_embedded(self, src: Path, dest: Path):
        data = self.extractor.get_embedded_preview(src)
        if not data:
            raise ThumbnailError("no embedded preview")
        with Image.open(io.BytesIO(data)) as im:
            self._save(im, dest)

    def _save(self, im: Image.Image, dest: Path):
        # thumbnail() keeps the aspect ratio and never enlarges
        im.thumbnail((self.size, self.size))
        if im.mode != 'RGB':
            im = im.convert('RGB')

        # Write then rename: a file at `dest` always means a complete preview
        tmp = dest.with_name(f"{dest.name}.{uuid.uuid4().hex}.tmp")
        try:
            im.save(tmp, format='JPEG', quality=self.quality, progressive=True)
            os.replace(tmp, dest)
        finally:
            if tmp.exists():
                tmp.unlink()
