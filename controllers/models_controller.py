"""Model discovery against an OpenAI-compatible backend."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import Request
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from services.imagine.admin_client import pick_error
from utils.errors import UpstreamError, UpstreamTimeoutError
from utils.request_guards import limit_text, normalize_base_url

LOGGER = logging.getLogger(__name__)


def _map_upstream_status(status: int) -> int:
    if status in (408, 504):
        return 504
    if status >= 500:
        return 502
    return 400


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


async def fetch_models(request: Request, base_url: Any, api_key: Any) -> Dict[str, Any]:
    """List model ids exposed by `<base_url>/models`.

    Returns:
        A dict containing: ok, models, endpoint, total
    """
    base_url = normalize_base_url(base_url)
    api_key = limit_text(api_key, 512, "apiKey")
    endpoint = f"{base_url}/models"
    timeout = request.app.state.settings.request_timeout

    try:
        # The SDK insists on a key; unauthenticated local backends ignore it.
        async with AsyncOpenAI(base_url=base_url, api_key=api_key or "unused", timeout=timeout, max_retries=0) as client:
            page = await client.models.list()
    except APITimeoutError as exc:
        raise UpstreamTimeoutError(f"Upstream request timed out after {timeout:g}s.") from exc
    except APIStatusError as exc:
        detail = pick_error(exc.body) or pick_error(exc.message)
        raise UpstreamError(
            detail or f"Model listing failed with HTTP {exc.status_code}",
            status=_map_upstream_status(exc.status_code),
            code="MODEL_FETCH_FAILED",
        ) from exc
    except APIConnectionError as exc:
        raise UpstreamError(f"Upstream request failed: {exc}", code="UPSTREAM_FETCH_ERROR") from exc

    models = [item.id.strip() for item in page.data if isinstance(getattr(item, "id", None), str) and item.id.strip()]
    LOGGER.info("Fetched %d model ids from %s", len(models), endpoint)
    return {"ok": True, "models": _unique(models), "endpoint": endpoint, "total": len(models)}
