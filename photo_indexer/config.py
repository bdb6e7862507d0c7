"""
Configuration constants for the photo indexer.
"""
import os
from pathlib import Path

# --- File Type Definitions ---
# Extensions are stored lower-cased and without the leading dot
RASTER_EXTS = {'jpg', 'jpeg', 'png', 'gif', 'bmp', 'tiff', 'tif', 'webp', 'avif', 'svg'}
HEIF_EXTS = {'heic', 'heif'}
RAW_EXTS = {'raw', 'cr2', 'nef', 'arw', 'dng', 'orf', 'rw2', 'pef', 'srw'}
MEDIA_EXTS = RASTER_EXTS | HEIF_EXTS | RAW_EXTS

# --- Traversal ---
# Directory names never descended into (VCS, caches, build output, OS bundles)
SKIP_DIRS = {
    'node_modules', '.git', '.Trash', 'Library', '.cache',
    '.npm', '.nvm', 'Caches', 'Application Support', 'Containers',
    'CoreData', 'Preferences', 'Saved Application State',
    'build', 'dist', 'out', 'target', 'bin', 'obj',
    'mipmap-hdpi', 'mipmap-mdpi', 'mipmap-xhdpi', 'mipmap-xxhdpi', 'mipmap-xxxhdpi',
    'drawable-hdpi', 'drawable-mdpi', 'drawable-xhdpi', 'drawable-xxhdpi', 'drawable-xxxhdpi',
    'AppIcons', 'Assets.xcassets', 'android', 'ios', 'flutter', '.dart_tool', '.gradle', '.idea',
}

# System volumes; any path starting with one of these is never scanned
SKIP_PATH_PREFIXES = (
    '/System', '/Library', '/private', '/usr', '/bin', '/sbin',
    '/var', '/dev', '/proc', '/tmp', '/Volumes/Recovery',
)

SCAN_BATCH_SIZE = 500
SCAN_WORKERS = 4
# How long start_scan waits for a cancelled session to wind down
SCAN_ABORT_WAIT_SEC = 5.0

# --- Thumbnails ---
THUMB_SIZE = 300
THUMB_QUALITY = 60
THUMB_WORKERS = 8
# Bump to invalidate every cached preview (it is part of the cache key)
THUMB_FORMAT_VERSION = 'v3'

# --- Watcher ---
WATCH_STABILITY_THRESHOLD_SEC = 1.0
WATCH_POLL_INTERVAL_SEC = 0.1

# --- Catalog ---
DB_FILENAME = 'gallery.db'
THUMB_DIRNAME = 'thumbnails'
DEFAULT_PAGE_SIZE = 200
SEARCH_LIMIT = 100
STATS_TOP_FOLDERS = 20

# Public sort keys -> column names
SORT_COLUMNS = {
    'modified': 'modified',
    'created': 'created',
    'name': 'filename',
    'size': 'size',
    'type': 'extension',
}
DEFAULT_SORT = 'modified'

# --- EXIF ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# exifread tag name -> metadata blob key
METADATA_TAGS = {
    'Image Make': 'make',
    'Image Model': 'model',
    'EXIF LensModel': 'lens',
    'Image Orientation': 'orientation',
    'EXIF ExposureTime': 'exposure_time',
    'EXIF FNumber': 'f_number',
    'EXIF ISOSpeedRatings': 'iso',
    'EXIF FocalLength': 'focal_length',
}


def default_app_dir() -> Path:
    """Application data directory: $PHOTO_INDEXER_HOME or ~/.photo_indexer."""
    env = os.environ.get('PHOTO_INDEXER_HOME')
    if env:
        return Path(env).expanduser()
    return Path.home() / '.photo_indexer'
