from fastapi import APIRouter, Depends, Request, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from controllers.models_controller import fetch_models
from utils.errors import AppError, to_error_message
from utils.request_guards import enforce_write_rate_limit, require_local_token

router = APIRouter(prefix="/api/models")


class ModelsFetchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base_url: str = Field(default="", alias="baseUrl")
    api_key: str = Field(default="", alias="apiKey")


@router.post("/fetch", dependencies=[Depends(require_local_token), Depends(enforce_write_rate_limit)])
async def post_models_fetch(request: Request, payload: ModelsFetchRequest):
    """List model ids from an OpenAI-compatible backend."""
    try:
        return await fetch_models(request, payload.base_url, payload.api_key)
    except (HTTPException, AppError):
        raise
    except Exception as exc:
        raise AppError(f"Internal server error: {to_error_message(exc)}") from exc
