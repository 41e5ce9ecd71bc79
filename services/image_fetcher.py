"""Safe download of remote images and decoding of inline data URLs.

Every request target, including each redirect hop, is validated by
`utils.url_safety.normalize_http_url` before any network I/O. Redirects are
followed manually up to `max_redirects`; a URL seen twice is a loop. The
response must be `image/*` and stay under `max_bytes`, checked against the
declared `Content-Length` first and again while the body streams in.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from utils.errors import AppError, UpstreamError, UpstreamTimeoutError, ValidationError, to_error_message
from utils.media_validation import (
    decode_data_image,
    extension_from_mime,
    extension_from_url,
    sniff_extension,
)
from utils.url_safety import build_candidate_urls, normalize_http_url, resolve_redirect

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_BYTES = 15 * 1024 * 1024
DEFAULT_MAX_REDIRECTS = 3


@dataclass
class FetchLimits:
    timeout: float = DEFAULT_TIMEOUT
    max_bytes: int = DEFAULT_MAX_BYTES
    max_redirects: int = DEFAULT_MAX_REDIRECTS


@dataclass
class FetchedImage:
    """Raw image bytes ready for the gallery store."""

    data: bytes
    ext: str
    origin_key: str


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def parse_data_image(data_url: str, max_bytes: Optional[int] = None) -> FetchedImage:
    """Decode an inline `data:image/...` reference without touching the network.

    The origin key is a content hash, so identical bytes dedupe regardless of
    where they came from.
    """
    mime, raw = decode_data_image(data_url, max_bytes=max_bytes)
    ext = extension_from_mime(mime) or sniff_extension(raw) or "png"
    return FetchedImage(data=raw, ext=ext, origin_key=f"data:{sha1_hex(raw)}")


def _map_upstream_status(status: int) -> int:
    if status >= 500:
        return 502
    if status == 408:
        return 504
    return 400


def _too_large(max_bytes: int) -> ValidationError:
    return ValidationError(
        f"Image exceeds the size limit ({max_bytes} bytes).",
        status=413,
        code="IMAGE_TOO_LARGE",
    )


async def _read_body_limited(response: httpx.Response, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    received = 0
    async for chunk in response.aiter_bytes():
        if not chunk:
            continue
        received += len(chunk)
        if received > max_bytes:
            raise _too_large(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


async def _fetch_once(client: httpx.AsyncClient, url: str, max_bytes: int) -> tuple[Optional[str], bytes, str]:
    """Issue one GET; returns `(redirect_location, body, content_type)`."""
    async with client.stream("GET", url, headers={"Accept": "image/*"}) as response:
        if 300 <= response.status_code < 400:
            location = response.headers.get("location")
            if not location:
                raise UpstreamError(
                    "Upstream sent a redirect without a Location header.",
                    code="REDIRECT_WITHOUT_LOCATION",
                )
            return location, b"", ""

        if not response.is_success:
            raise UpstreamError(
                f"HTTP {response.status_code}",
                status=_map_upstream_status(response.status_code),
                code="UPSTREAM_HTTP_ERROR",
            )

        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            raise ValidationError(
                f"Remote resource is not an image, content-type={content_type or 'missing'}",
                status=422,
                code="UNSUPPORTED_CONTENT_TYPE",
            )

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise _too_large(max_bytes)

        body = await _read_body_limited(response, max_bytes)
        if not body:
            raise ValidationError("Remote image response was empty.", status=422, code="EMPTY_IMAGE_RESPONSE")
        return None, body, content_type


async def fetch_image_bytes(client: httpx.AsyncClient, origin_url: str, limits: FetchLimits) -> tuple[bytes, str]:
    """Follow redirects manually from `origin_url` and return `(body, content_type)`."""
    current_url = origin_url
    visited = {current_url}

    for _ in range(limits.max_redirects + 1):
        try:
            location, body, content_type = await asyncio.wait_for(
                _fetch_once(client, current_url, limits.max_bytes),
                timeout=limits.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(
                f"Image request timed out after {limits.timeout:g}s.",
                code="IMAGE_FETCH_TIMEOUT",
            ) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(
                f"Image request timed out after {limits.timeout:g}s.",
                code="IMAGE_FETCH_TIMEOUT",
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Image request failed: {exc}", code="UPSTREAM_FETCH_ERROR") from exc

        if location is None:
            return body, content_type

        next_url = resolve_redirect(location, current_url)
        if next_url in visited:
            raise UpstreamError("Redirect loop detected.", code="REDIRECT_LOOP")
        visited.add(next_url)
        current_url = next_url

    raise UpstreamError("Too many redirects.", code="TOO_MANY_REDIRECTS")


async def fetch_remote_image(
    image_url: str,
    limits: Optional[FetchLimits] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FetchedImage:
    """Download a remote image safely.

    Args:
        image_url: The http(s) URL to fetch.
        limits: Timeout, byte ceiling and redirect budget.
        client: Optional shared client; must not follow redirects itself.

    Returns:
        The image bytes, a file extension, and a `url:`-prefixed origin key.

    Raises:
        ValidationError: If the URL fails validation before any request.
        UpstreamError: If every candidate URL fails; the message lists each
            candidate with its failure.
    """
    limits = limits or FetchLimits()
    origin_url = normalize_http_url(image_url)
    candidates = build_candidate_urls(origin_url)
    errors: list[str] = []

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(follow_redirects=False, timeout=limits.timeout)
    try:
        for candidate in candidates:
            try:
                body, content_type = await fetch_image_bytes(client, candidate, limits)
            except AppError as exc:
                LOGGER.warning("Image fetch failed for %s: %s", candidate, exc.message)
                errors.append(f"{candidate} -> {exc.message}")
                if len(candidates) == 1:
                    raise
                continue
            except Exception as exc:  # pylint: disable=broad-exception-caught
                LOGGER.warning("Image fetch failed for %s: %s", candidate, exc)
                errors.append(f"{candidate} -> {to_error_message(exc)}")
                continue

            ext = (
                extension_from_mime(content_type)
                or extension_from_url(candidate)
                or extension_from_url(origin_url)
                or sniff_extension(body)
                or "png"
            )
            return FetchedImage(data=body, ext=ext, origin_key=f"url:{origin_url}")
    finally:
        if owns_client:
            await client.aclose()

    raise UpstreamError(f"Failed to download image: {'; '.join(errors)}", code="REMOTE_IMAGE_FETCH_FAILED")
