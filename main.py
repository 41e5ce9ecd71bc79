import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from routes.gallery_route import router as gallery_router
from routes.models_route import router as models_router
from services.gallery_store import GalleryStore
from utils.errors import AppError, to_http_error
from utils.request_guards import WriteRateLimiter
from utils.settings import Settings, load_settings

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

LOGGER = logging.getLogger(__name__)

LOCAL_ORIGIN_REGEX = r"^https?://(127\.0\.0\.1|localhost)(:\d+)?$"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the gallery store (directory + empty index on first run)
      - the shared outbound httpx client (redirects are followed manually)
      - the write rate limiter
    and attach them to `app.state`.
    """
    settings: Settings = app.state.settings

    gallery_store = GalleryStore(settings.gallery_dir, settings.index_file)
    await gallery_store.ensure_store()
    app.state.gallery_store = gallery_store

    app.state.http_client = httpx.AsyncClient(follow_redirects=False, timeout=settings.request_timeout)
    app.state.write_rate_limiter = WriteRateLimiter(
        window=settings.write_rate_limit_window,
        max_requests=settings.write_rate_limit_max,
    )
    app.state.started_at = time.monotonic()

    if not settings.local_api_token:
        if settings.allow_insecure_local:
            LOGGER.warning("LOCAL_API_TOKEN is not set; running with ALLOW_INSECURE_LOCAL=true.")
        else:
            LOGGER.warning("LOCAL_API_TOKEN is not set; write endpoints will reject requests.")
    LOGGER.info("Gallery dir: %s", settings.gallery_dir)

    try:
        yield
    finally:
        await app.state.http_client.aclose()


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = to_http_error(exc)
    return JSONResponse(
        status_code=error["status"],
        content={"ok": False, "code": error["code"], "message": error["message"]},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    settings = settings or load_settings()
    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.get("/api/health")
    async def health(request: Request):
        """
        Health check reporting store readiness and write-lock pressure.
        """
        store: GalleryStore = request.app.state.gallery_store
        await store.ensure_store()
        return {
            "ok": True,
            "storeReady": True,
            "writeLockQueueDepth": store.queue_depth,
            "uptimeSec": int(time.monotonic() - request.app.state.started_at),
        }

    @app.get("/", include_in_schema=False)
    async def serve_index():
        """
        Serve the frontend index page from the public directory.
        """
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.exists():
            raise HTTPException(status_code=404, detail="Frontend not found")
        return FileResponse(index_path)

    # Register application routers
    app.include_router(gallery_router)
    app.include_router(models_router)

    # StaticFiles checks its directory at construction time.
    settings.gallery_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/gallery", StaticFiles(directory=settings.gallery_dir), name="gallery")
    if PUBLIC_DIR.exists():
        app.mount("/public", StaticFiles(directory=PUBLIC_DIR), name="public")

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app_settings = load_settings()
    uvicorn.run(create_app(app_settings), host=app_settings.host, port=app_settings.port)
