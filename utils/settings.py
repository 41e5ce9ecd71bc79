"""Environment-driven configuration for the gallery service.

Values are read once from the process environment (after `load_dotenv()`)
into an immutable `Settings` instance stored on `app.state.settings`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} must be an integer") from exc
    return value if value > 0 else default


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in ("1", "true")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    Attributes:
        gallery_dir: Directory holding gallery image files.
        index_file: JSON document listing gallery entries.
        local_api_token: Shared token required by write endpoints.
        allow_insecure_local: Permit writes when no token is configured.
        image_fetch_max_bytes: Byte ceiling for remote and inline images.
    """

    gallery_dir: Path
    index_file: Path
    host: str = "127.0.0.1"
    port: int = 8086
    local_api_token: str = ""
    allow_insecure_local: bool = False
    request_timeout: float = 15.0
    image_fetch_timeout: float = 15.0
    image_fetch_max_bytes: int = 15 * 1024 * 1024
    image_fetch_max_redirects: int = 3
    write_rate_limit_window: float = 60.0
    write_rate_limit_max: int = 60


def load_settings(gallery_dir: Optional[Path | str] = None) -> Settings:
    """Build `Settings` from the environment.

    Args:
        gallery_dir: Optional override for `GALLERY_DIR` (used by tests).

    Raises:
        RuntimeError: If the gallery directory is not usable.
    """
    load_dotenv()

    env_dir = gallery_dir or os.getenv("GALLERY_DIR") or ROOT_DIR / "gallery"
    resolved_dir = Path(env_dir).expanduser().resolve()
    if resolved_dir.exists() and not resolved_dir.is_dir():
        raise RuntimeError(
            f"GALLERY_DIR={str(env_dir)!r} points to a file, not a directory ({resolved_dir})."
        )

    env_index = os.getenv("GALLERY_INDEX_FILE") if gallery_dir is None else None
    index_file = Path(env_index).expanduser().resolve() if env_index else resolved_dir / "index.json"

    return Settings(
        gallery_dir=resolved_dir,
        index_file=index_file,
        host=os.getenv("HOST", "127.0.0.1"),
        port=_env_int("PORT", 8086),
        local_api_token=(os.getenv("LOCAL_API_TOKEN") or "").strip(),
        allow_insecure_local=_env_flag("ALLOW_INSECURE_LOCAL"),
        request_timeout=_env_int("REQUEST_TIMEOUT_MS", 15000) / 1000,
        image_fetch_timeout=_env_int("IMAGE_FETCH_TIMEOUT_MS", 15000) / 1000,
        image_fetch_max_bytes=_env_int("IMAGE_FETCH_MAX_BYTES", 15 * 1024 * 1024),
        image_fetch_max_redirects=_env_int("IMAGE_FETCH_MAX_REDIRECTS", 3),
        write_rate_limit_window=max(_env_int("WRITE_RATE_LIMIT_WINDOW_MS", 60000), 1000) / 1000,
        write_rate_limit_max=_env_int("WRITE_RATE_LIMIT_MAX", 60),
    )
