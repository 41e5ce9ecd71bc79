"""Async file access layer for the gallery index and its image files.

The index is a single JSON array on disk. Writes go to a sibling temporary
file which is then renamed over the index, so a reader only ever sees a fully
committed document. Nothing in this module serializes callers; see
`services.gallery_store.GalleryStore` for the write lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import aiofiles
import aiofiles.os

from models.gallery_entry import GalleryEntry
from utils.errors import StoreCorruptionError

LOGGER = logging.getLogger(__name__)


class GalleryIndexDAL:
    """Read and atomically rewrite the gallery index document.

    Args:
        gallery_dir: Directory holding the image files.
        index_file: Path to the JSON index document.
    """

    def __init__(self, gallery_dir: Path | str, index_file: Path | str) -> None:
        self.gallery_dir = Path(gallery_dir)
        self.index_file = Path(index_file)
        self.tmp_file = self.index_file.with_name(self.index_file.name + ".tmp")

    async def ensure_store(self) -> None:
        """Create the gallery directory and an empty index if missing."""
        await aiofiles.os.makedirs(self.gallery_dir, exist_ok=True)
        await aiofiles.os.makedirs(self.index_file.parent, exist_ok=True)
        if not await aiofiles.os.path.exists(self.index_file):
            async with aiofiles.open(self.index_file, "w", encoding="utf-8") as f:
                await f.write("[]\n")

    async def read_index(self) -> List[GalleryEntry]:
        """Return the committed index, newest first.

        Raises:
            StoreCorruptionError: If the document is not valid JSON. The raw
                bytes are copied to a timestamped `.bak-` file first.
        """
        await self.ensure_store()
        async with aiofiles.open(self.index_file, "rb") as f:
            raw = await f.read()
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            try:
                backup_path = await self._backup_corrupted(raw)
            except OSError as backup_exc:
                LOGGER.error("Failed to back up corrupted index %s: %s", self.index_file, backup_exc)
            else:
                LOGGER.error("Gallery index %s is corrupted; raw copy saved to %s", self.index_file, backup_path)
            raise StoreCorruptionError(
                "Gallery index file is corrupted; repair it and retry.",
            ) from exc
        if not isinstance(parsed, list):
            return []
        return [GalleryEntry.from_dict(item) for item in parsed if isinstance(item, dict)]

    async def write_index(self, entries: List[GalleryEntry]) -> None:
        """Atomically replace the index document with `entries`."""
        await self.ensure_store()
        body = json.dumps([entry.to_dict() for entry in entries], indent=2, ensure_ascii=False)
        async with aiofiles.open(self.tmp_file, "w", encoding="utf-8") as f:
            await f.write(body + "\n")
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(self.tmp_file, self.index_file)

    async def write_image_file(self, filename: str, data: bytes) -> Path:
        """Write image bytes under the gallery directory and return the path."""
        path = self.gallery_dir / filename
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return path

    async def remove_image_file(self, filename: str) -> bool:
        """Delete an image file; a missing file is not an error."""
        try:
            await aiofiles.os.remove(self.gallery_dir / filename)
        except FileNotFoundError:
            LOGGER.info("Gallery file %s already removed", filename)
            return False
        return True

    async def _backup_corrupted(self, raw: bytes) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = self.index_file.with_name(f"{self.index_file.name}.bak-{timestamp}")
        async with aiofiles.open(backup_path, "wb") as f:
            await f.write(raw)
        return backup_path
