from fastapi import APIRouter, Depends, Request, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from controllers.gallery_controller import delete_from_gallery, list_gallery, save_to_gallery
from utils.errors import AppError, to_error_message
from utils.request_guards import enforce_write_rate_limit, require_local_token

router = APIRouter(prefix="/api/gallery")

write_guards = [Depends(require_local_token), Depends(enforce_write_rate_limit)]


class GallerySaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    data_url: Optional[str] = Field(default=None, alias="dataUrl")
    prompt: Optional[str] = None
    model: Optional[str] = None
    source: Optional[str] = None


@router.get("/list")
async def get_gallery(request: Request):
    """List saved images, newest first."""
    try:
        return await list_gallery(request)
    except (HTTPException, AppError):
        raise
    except Exception as exc:
        raise AppError(f"Internal server error: {to_error_message(exc)}") from exc


@router.post("/save", dependencies=write_guards)
async def post_gallery_item(request: Request, payload: GallerySaveRequest):
    """Save a remote or inline image into the gallery."""
    try:
        return await save_to_gallery(
            request,
            payload.image_url,
            payload.data_url,
            prompt=payload.prompt,
            model=payload.model,
            source=payload.source,
        )
    except (HTTPException, AppError):
        raise
    except Exception as exc:
        raise AppError(f"Internal server error: {to_error_message(exc)}") from exc


@router.delete("/{entry_id}", dependencies=write_guards)
async def delete_gallery_item(request: Request, entry_id: str):
    """Delete a gallery entry by id."""
    try:
        return await delete_from_gallery(request, entry_id)
    except (HTTPException, AppError):
        raise
    except Exception as exc:
        raise AppError(f"Internal server error: {to_error_message(exc)}") from exc
