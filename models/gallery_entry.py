from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class GalleryEntry:
    """In-memory representation of one item in the gallery index.

    Attributes:
        id: Stable identifier generated at creation.
        filename: Name of the image file inside the gallery directory.
        path: Public path the file is served under (e.g. `/gallery/<file>`).
        prompt: Prompt that produced the image.
        model: Model id that produced the image.
        source: Where the image came from (stream, images, content, ...).
        origin_key: Content identity used for deduplication.
        size: Stored byte size.
        created_at: ISO-8601 UTC timestamp.
    """

    id: str
    filename: str
    path: str
    prompt: str = ""
    model: str = ""
    source: str = ""
    origin_key: str = ""
    size: int = 0
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the persisted index keys."""
        return {
            "id": self.id,
            "filename": self.filename,
            "path": self.path,
            "prompt": self.prompt,
            "model": self.model,
            "source": self.source,
            "originKey": self.origin_key,
            "size": self.size,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GalleryEntry":
        return cls(
            id=str(raw.get("id") or ""),
            filename=str(raw.get("filename") or ""),
            path=str(raw.get("path") or ""),
            prompt=str(raw.get("prompt") or ""),
            model=str(raw.get("model") or ""),
            source=str(raw.get("source") or ""),
            origin_key=str(raw.get("originKey") or ""),
            size=int(raw.get("size") or 0),
            created_at=str(raw.get("createdAt") or ""),
        )

    def to_client_item(self, origin: str) -> Dict[str, Any]:
        """Client view: absolute URL added, origin key withheld."""
        return {
            "id": self.id,
            "filename": self.filename,
            "url": f"{origin.rstrip('/')}{self.path}",
            "path": self.path,
            "prompt": self.prompt,
            "model": self.model,
            "source": self.source,
            "size": self.size,
            "createdAt": self.created_at,
        }
