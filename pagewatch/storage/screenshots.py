"""On-disk screenshot storage."""

import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from pagewatch.config import settings
from pagewatch.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ScreenshotStore:
    """
    Stores PNG screenshots under a base directory.

    Files are addressed by a reference relative to the base directory
    (``<target_id>/<label>_<timestamp>_<suffix>.png``); that reference is what
    gets persisted on targets and history records.
    """

    def __init__(self, base_path: Optional[str] = None):
        """
        Initialize the store.

        Args:
            base_path: Base directory (defaults to config)
        """
        self.base_path = Path(base_path or settings.screenshot_dir)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _new_ref(self, target_id: int, label: str, timestamp: Optional[datetime] = None) -> str:
        timestamp = timestamp or utcnow()
        stamp = timestamp.strftime("%Y%m%d_%H%M%S_%f")
        return f"{target_id}/{label}_{stamp}_{uuid.uuid4().hex[:8]}.png"

    def path(self, ref: str) -> Path:
        return self.base_path / ref

    def save(self, target_id: int, label: str, data: bytes) -> str:
        """
        Write image bytes atomically and return the new reference.

        The bytes go to a temp file next to the destination and are moved into
        place with ``os.replace``, so readers never see a partial file.
        """
        ref = self._new_ref(target_id, label)
        path = self.path(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return ref

    def read(self, ref: Optional[str]) -> Optional[bytes]:
        """Read an image, or None if the reference is empty or the file is gone."""
        if not ref:
            return None
        try:
            return self.path(ref).read_bytes()
        except FileNotFoundError:
            logger.warning(f"Screenshot missing on disk: {ref}")
            return None

    def delete(self, ref: Optional[str]) -> None:
        """Remove an image; missing files are ignored."""
        if not ref:
            return
        try:
            self.path(ref).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete screenshot {ref}: {e}")
