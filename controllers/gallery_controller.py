from fastapi import Request
from typing import Dict, Any, Optional

from services.gallery_store import GalleryStore
from services.image_fetcher import FetchLimits, fetch_remote_image, parse_data_image
from utils.errors import AppError, ValidationError
from utils.request_guards import limit_text

DATA_URL_MAX_LENGTH = 20 * 1024 * 1024


def _origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


async def list_gallery(request: Request) -> Dict[str, Any]:
    """Return every gallery entry, newest first, in client form."""
    store: GalleryStore = request.app.state.gallery_store
    entries = await store.list()
    origin = _origin(request)
    return {"ok": True, "items": [entry.to_client_item(origin) for entry in entries]}


async def save_to_gallery(
    request: Request,
    image_url: Optional[str],
    data_url: Optional[str],
    prompt: Optional[str] = None,
    model: Optional[str] = None,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """Fetch or decode an image and persist it to the gallery.

    Args:
        request: FastAPI Request (gallery store, settings and http client live on app.state).
        image_url: Remote http(s) image to download.
        data_url: Inline `data:image/...;base64,` payload.
        prompt, model, source: Metadata stored alongside the entry.

    Returns:
        A dict containing: ok, duplicated, item

    Exactly one of `image_url` / `data_url` must be given.
    """
    image_url = limit_text(image_url, 2048, "imageUrl")
    data_url = limit_text(data_url, DATA_URL_MAX_LENGTH, "dataUrl")
    prompt = limit_text(prompt, 4000, "prompt")
    model = limit_text(model, 200, "model")
    source = limit_text(source, 200, "source")

    if bool(image_url) == bool(data_url):
        raise ValidationError("Provide exactly one of imageUrl or dataUrl.", code="INVALID_IMAGE_PAYLOAD")

    settings = request.app.state.settings
    store: GalleryStore = request.app.state.gallery_store

    if data_url:
        fetched = parse_data_image(data_url, max_bytes=settings.image_fetch_max_bytes)
    else:
        limits = FetchLimits(
            timeout=settings.image_fetch_timeout,
            max_bytes=settings.image_fetch_max_bytes,
            max_redirects=settings.image_fetch_max_redirects,
        )
        fetched = await fetch_remote_image(image_url, limits, client=request.app.state.http_client)

    saved = await store.save(
        fetched.data,
        fetched.ext,
        prompt=prompt,
        model=model,
        source=source,
        origin_key=fetched.origin_key,
    )
    return {
        "ok": True,
        "duplicated": saved.duplicated,
        "item": saved.entry.to_client_item(_origin(request)),
    }


async def delete_from_gallery(request: Request, entry_id: str) -> Dict[str, Any]:
    """Remove one entry and its file."""
    entry_id = limit_text(entry_id, 200, "id")
    if not entry_id:
        raise ValidationError("id must not be empty.", code="MISSING_ID")

    store: GalleryStore = request.app.state.gallery_store
    removed = await store.delete(entry_id)
    if not removed:
        raise AppError("Gallery item not found or already deleted.", status=404, code="GALLERY_ITEM_NOT_FOUND")
    return {"ok": True}
