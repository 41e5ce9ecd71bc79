"""Normalize heterogeneous image payloads into deduplicated `ImageRef` lists."""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from models.stream_models import (
	ErrorPayload,
	ImageBatchPayload,
	ImageRef,
	StatusPayload,
	StreamPayload,
	UnknownPayload,
)

ASSET_PORT = 9000
LOCAL_HOSTNAMES = {"127.0.0.1", "localhost"}

MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(([^)\s]+)\)")
DATA_URL_PATTERN = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")
PLAIN_URL_PATTERN = re.compile(r"\bhttps?://[^\s)]+")


def _clean(value: Any) -> str:
	return value.strip() if isinstance(value, str) else ""


def _append_url(output: List[ImageRef], url: Any, source: str) -> None:
	text = _clean(url)
	if text:
		output.append(ImageRef(url=text, source=source))


def _append_base64(output: List[ImageRef], b64: Any, source: str) -> None:
	text = _clean(b64)
	if text:
		output.append(ImageRef(url=f"data:image/png;base64,{text}", source=source))


def _collect_image_shapes(entry: Any, output: List[ImageRef], source: str) -> None:
	"""Check one object for `url`, `b64_json` and `base64` fields."""
	if not isinstance(entry, dict):
		return
	_append_url(output, entry.get("url"), source)
	_append_base64(output, entry.get("b64_json"), source)
	_append_base64(output, entry.get("base64"), source)


def dedupe_images(images: Iterable[ImageRef]) -> List[ImageRef]:
	"""Drop empty and repeated URLs, keeping first-seen order."""
	seen = set()
	result: List[ImageRef] = []
	for image in images:
		url = _clean(image.url)
		if not url or url in seen:
			continue
		seen.add(url)
		result.append(ImageRef(url=url, source=image.source or "content"))
	return result


def normalize_image_url(raw_url: str, base_url: str = "") -> str:
	"""Resolve a URL against the backend base and fix local asset-port URLs.

	A loopback URL on the asset port is rewritten to the configured base
	scheme/host/port when the base is also loopback. Data URLs and anything
	that is not http(s) after resolution are returned unchanged.
	"""
	text = _clean(raw_url)
	if not text or text.startswith("data:image/"):
		return text

	base = urlsplit(_clean(base_url)) if base_url else None
	base_origin = f"{base.scheme}://{base.netloc}/" if base and base.scheme and base.netloc else ""
	resolved = urljoin(base_origin, text) if base_origin else text

	try:
		parts = urlsplit(resolved)
		port = parts.port
	except ValueError:
		return text
	if parts.scheme not in ("http", "https"):
		return text

	if (
		(parts.hostname or "").lower() in LOCAL_HOSTNAMES
		and port == ASSET_PORT
		and base is not None
		and (base.hostname or "").lower() in LOCAL_HOSTNAMES
	):
		return urlunsplit((base.scheme, base.netloc, parts.path, parts.query, parts.fragment))
	return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", parts.query, parts.fragment))


def normalize_parsed_images(images: Iterable[ImageRef], base_url: str = "") -> List[ImageRef]:
	normalized = [
		ImageRef(url=normalize_image_url(image.url, base_url), source=image.source)
		for image in dedupe_images(images)
	]
	return dedupe_images(normalized)


def extract_images_from_payload(payload: Any, base_url: str = "", source: str = "stream") -> List[ImageRef]:
	"""Extract images from one stream frame or API response object.

	Checks the payload itself, every entry of `data[]`, and a nested `image`
	object for the `url`, `b64_json` and `base64` shapes.
	"""
	if not isinstance(payload, dict):
		return []
	output: List[ImageRef] = []
	_collect_image_shapes(payload, output, source)
	data = payload.get("data")
	if isinstance(data, list):
		for item in data:
			_collect_image_shapes(item, output, source)
	_collect_image_shapes(payload.get("image"), output, source)
	return normalize_parsed_images(output, base_url)


def _content_text(content: Any) -> str:
	if isinstance(content, str):
		return content
	if isinstance(content, list):
		parts = []
		for part in content:
			if isinstance(part, str):
				parts.append(part)
			elif isinstance(part, dict) and isinstance(part.get("text"), str):
				parts.append(part["text"])
		return "\n".join(parts)
	return ""


def _collect_images_field(raw_images: Any, output: List[ImageRef]) -> None:
	if not isinstance(raw_images, list):
		return
	for entry in raw_images:
		if isinstance(entry, str):
			_append_url(output, entry, "images")
			continue
		if isinstance(entry, dict):
			direct = next((_clean(entry.get(key)) for key in ("url", "image_url", "src") if _clean(entry.get(key))), "")
			image_url = entry.get("image_url")
			if not direct and isinstance(image_url, dict):
				direct = _clean(image_url.get("url"))
			_append_url(output, direct, "images")
			_append_base64(output, entry.get("b64_json"), "data_url")


def extract_images_from_text(text: str) -> List[ImageRef]:
	"""Markdown image links, then inline data URLs, then bare http(s) URLs."""
	output: List[ImageRef] = []
	for match in MARKDOWN_IMAGE_PATTERN.finditer(text):
		output.append(ImageRef(url=match.group(1), source="content"))
	for match in DATA_URL_PATTERN.finditer(text):
		output.append(ImageRef(url=match.group(0), source="data_url"))
	for match in PLAIN_URL_PATTERN.finditer(text):
		output.append(ImageRef(url=match.group(0), source="content"))
	return output


def parse_chat_images(data: Any, base_url: str = "") -> List[ImageRef]:
	"""Extract images from a chat-completions response body."""
	choices = data.get("choices") if isinstance(data, dict) else None
	first = choices[0] if isinstance(choices, list) and choices else {}
	message = first.get("message") if isinstance(first, dict) else None
	if not isinstance(message, dict):
		message = {}

	output: List[ImageRef] = []
	_collect_images_field(message.get("images"), output)
	text = _content_text(message.get("content"))
	if text:
		output.extend(extract_images_from_text(text))
	return normalize_parsed_images(output, base_url)


def parse_images_generation(data: Any, base_url: str = "") -> List[ImageRef]:
	"""Extract images from an `/images/generations` or `/images/edits` body."""
	items = data.get("data") if isinstance(data, dict) else None
	output: List[ImageRef] = []
	for item in items if isinstance(items, list) else []:
		if not isinstance(item, dict):
			continue
		_append_url(output, item.get("url"), "images")
		_append_base64(output, item.get("b64_json"), "data_url")
	return normalize_parsed_images(output, base_url)


def _first_text(*values: Any) -> str:
	for value in values:
		text = _clean(value)
		if text:
			return text
	return ""


def parse_stream_payload(payload: Any, base_url: str = "") -> StreamPayload:
	"""Classify a decoded live-update frame by its `type` field."""
	if not isinstance(payload, dict):
		return UnknownPayload(raw=payload)
	kind = payload.get("type")
	if kind == "error":
		error = payload.get("error")
		error_message: Optional[str] = error.get("message") if isinstance(error, dict) else error
		return ErrorPayload(message=_first_text(payload.get("message"), error_message) or "upstream error")
	if kind == "status":
		return StatusPayload(text=_first_text(payload.get("message"), payload.get("status"), payload.get("text")))
	images = extract_images_from_payload(payload, base_url)
	if images:
		return ImageBatchPayload(images=images)
	return UnknownPayload(raw=payload)
