import logging
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, Any

import exifread

from .. import config


class MetadataExtractor:
    """
    EXIF access for enrichment, backed by 'exifread' (fast, Python-native).

    Two uses:
      - `get_image_metadata`: the key/value blob stored on a MediaRecord.
      - `get_embedded_preview`: the JPEG preview most cameras embed,
        used as the permissive fallback when a file cannot be decoded.
    """

    def get_image_metadata(self, path: Path) -> Dict[str, Any]:
        """
        Returns a JSON-friendly dict of the interesting EXIF tags.
        Missing or unreadable EXIF yields an empty dict.
        """
        try:
            with path.open('rb') as f:
                # details=False speeds up processing significantly
                tags = exifread.process_file(f, details=False)
        except Exception as e:
            logging.warning(f"ExifRead failed for {path}: {e}")
            return {}

        if not tags:
            logging.debug(f"No EXIF tags found for {path}")
            return {}

        blob: Dict[str, Any] = {}
        for tag, key in config.METADATA_TAGS.items():
            if tag in tags:
                value = str(tags[tag]).strip()
                if value:
                    blob[key] = value

        dt = self._parse_exif_date(tags)
        if dt:
            blob['captured'] = dt.isoformat()

        return blob

    def get_embedded_preview(self, path: Path) -> Optional[bytes]:
        """Returns the embedded EXIF JPEG preview, or None if there is none."""
        try:
            with path.open('rb') as f:
                tags = exifread.process_file(f, details=True)
        except Exception as e:
            logging.debug(f"ExifRead preview extraction failed for {path}: {e}")
            return None

        data = tags.get('JPEGThumbnail')
        if not data:
            return None
        return bytes(data)

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    # EXIF format is usually "YYYY:MM:DD HH:MM:SS"
                    dt_str = str(tags[tag]).replace(':', '-', 2)
                    return datetime.strptime(dt_str, "%Y-%m-%d %H:%M:%S")
                except ValueError:
                    continue
        return None
