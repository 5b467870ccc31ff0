# File operations - reel upload directories, public URLs, deletes and the retention sweep

import os
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional

from reelpipe.core.config import settings

logger = logging.getLogger(__name__)

ORIGINAL_SUBDIR = "original"
PROCESSED_SUBDIR = "processed"
THUMBNAIL_SUBDIR = "thumbnails"


class MediaStorage:
    """Local disk layout for reel media: original/, processed/, thumbnails/"""

    def __init__(self, root: Optional[str] = None, public_prefix: Optional[str] = None):
        self.root = Path(root or settings.uploads_dir)
        self.public_prefix = (public_prefix or settings.public_uploads_prefix).rstrip("/")

    @property
    def original_dir(self) -> Path:
        return self.root / ORIGINAL_SUBDIR

    @property
    def processed_dir(self) -> Path:
        return self.root / PROCESSED_SUBDIR

    @property
    def thumbnail_dir(self) -> Path:
        return self.root / THUMBNAIL_SUBDIR

    def ensure_dirs(self):
        """Create the upload directories if missing"""
        for directory in (self.original_dir, self.processed_dir, self.thumbnail_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def original_path(self, file_name: str) -> str:
        return str(self.original_dir / file_name)

    def processed_path(self, file_name: str) -> str:
        return str(self.processed_dir / file_name)

    def thumbnail_path(self, file_name: str) -> str:
        return str(self.thumbnail_dir / file_name)

    def processed_url(self, file_name: str) -> str:
        return f"{self.public_prefix}/{PROCESSED_SUBDIR}/{file_name}"

    def thumbnail_url(self, file_name: str) -> str:
        return f"{self.public_prefix}/{THUMBNAIL_SUBDIR}/{file_name}"

    @staticmethod
    def file_name_from_url(url: str) -> str:
        """Last path segment of a stored URL, e.g. origin_url -> upload file name"""
        return url.rstrip("/").split("/")[-1]

    def delete_file(self, file_path: str) -> bool:
        """
        Delete a file.

        Returns:
            bool: True if deleted, False if it was already gone

        Raises:
            OSError: for anything other than a missing file
        """
        try:
            os.remove(file_path)
        except FileNotFoundError:
            logger.debug(f"File already deleted: {file_path}")
            return False
        logger.info(f"File deleted: {os.path.basename(file_path)}")
        return True

    def clean_old_files(self, days_old: int = 7) -> Dict[str, int]:
        """
        Delete leftover uploads whose mtime is older than `days_old` days.

        Only the original/ directory is swept: processed videos and thumbnails
        back the URLs of published reels and are never expired here. A directory
        that cannot be read is logged and skipped.

        Returns:
            Dict with deleted_count and freed_bytes
        """
        cutoff = time.time() - days_old * 24 * 60 * 60
        deleted_count = 0
        freed_bytes = 0

        for directory in self._sweep_dirs():
            try:
                entries = list(directory.iterdir())
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Error cleaning directory {directory}: {e}")
                continue

            for entry in entries:
                try:
                    stats = entry.stat()
                    if not entry.is_file() or stats.st_mtime >= cutoff:
                        continue
                    if self.delete_file(str(entry)):
                        deleted_count += 1
                        freed_bytes += stats.st_size
                except OSError as e:
                    logger.error(f"Error deleting {entry}: {e}")

        logger.info(
            f"Cleanup completed: deleted {deleted_count} files, "
            f"freed {freed_bytes / 1024 / 1024:.2f} MB"
        )
        return {"deleted_count": deleted_count, "freed_bytes": freed_bytes}

    def _sweep_dirs(self) -> List[Path]:
        return [self.original_dir]


# Global storage instance
media_storage = MediaStorage()
