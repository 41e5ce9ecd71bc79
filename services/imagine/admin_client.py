"""Client for the upstream imagine admin RPCs and live-update URLs."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from utils.errors import UpstreamError, UpstreamTimeoutError

LOGGER = logging.getLogger(__name__)

IMAGINE_PATH = "/api/v1/admin/imagine"


def sanitize_base_url(url: str) -> str:
	return (url or "").strip().rstrip("/")


def pick_error(payload: Any) -> str:
	"""Return the most specific error text found in an upstream body."""
	if isinstance(payload, str):
		return payload.strip()[:240]
	if not isinstance(payload, dict):
		return ""
	error = payload.get("error")
	candidates = [
		error.get("message") if isinstance(error, dict) else error,
		payload.get("message"),
		payload.get("detail"),
	]
	for item in candidates:
		if isinstance(item, str) and item.strip():
			return item.strip()[:240]
	return ""


class ImagineAdminClient:
	"""Start/stop remote generation tasks and build their stream URLs.

	Args:
		admin_base_url: Origin of the admin API (e.g. `http://127.0.0.1:8000`).
		api_key: Optional bearer token for the admin RPCs.
		client: Optional shared `httpx.AsyncClient`; one is created per call otherwise.
		timeout: Per-request timeout in seconds.
	"""

	def __init__(
		self,
		admin_base_url: str,
		api_key: str = "",
		*,
		client: Optional[httpx.AsyncClient] = None,
		timeout: float = 15.0,
	) -> None:
		self.admin_base_url = sanitize_base_url(admin_base_url)
		self.api_key = (api_key or "").strip()
		self._client = client
		self.timeout = timeout

	def _headers(self) -> Dict[str, str]:
		headers = {"Content-Type": "application/json"}
		if self.api_key:
			headers["Authorization"] = f"Bearer {self.api_key}"
		return headers

	async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
		url = f"{self.admin_base_url}{IMAGINE_PATH}{path}"
		try:
			if self._client is not None:
				response = await self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
			else:
				async with httpx.AsyncClient(timeout=self.timeout) as client:
					response = await client.post(url, json=payload, headers=self._headers())
		except httpx.TimeoutException as exc:
			raise UpstreamTimeoutError(f"Admin request timed out after {self.timeout:g}s: {url}") from exc
		except httpx.HTTPError as exc:
			raise UpstreamError(f"Admin request failed: {exc}", code="UPSTREAM_FETCH_ERROR") from exc

		try:
			body: Any = response.json()
		except ValueError:
			body = response.text
		if not response.is_success:
			detail = pick_error(body)
			raise UpstreamError(
				f"HTTP {response.status_code}" + (f" - {detail}" if detail else ""),
				code="ADMIN_RPC_FAILED",
			)
		return body

	async def start_task(self, prompt: str, aspect_ratio: str) -> str:
		"""Create one remote generation task and return its id."""
		body = await self._post("/start", {"prompt": prompt, "aspect_ratio": aspect_ratio})
		task_id = body.get("task_id") if isinstance(body, dict) else None
		if not isinstance(task_id, str) or not task_id.strip():
			raise UpstreamError("Admin start response did not include a task_id.", code="MISSING_TASK_ID")
		LOGGER.info("Created imagine task %s", task_id)
		return task_id.strip()

	async def stop_tasks(self, task_ids: List[str]) -> None:
		if not task_ids:
			return
		await self._post("/stop", {"task_ids": list(task_ids)})
		LOGGER.info("Stopped imagine tasks %s", ", ".join(task_ids))

	def ws_url(self, task_id: str) -> str:
		base = self.admin_base_url
		if base.startswith("https://"):
			base = "wss://" + base[len("https://"):]
		elif base.startswith("http://"):
			base = "ws://" + base[len("http://"):]
		return f"{base}{IMAGINE_PATH}/ws?{urlencode({'task_id': task_id})}"

	def sse_url(self, task_id: str) -> str:
		query = urlencode({"task_id": task_id, "t": int(time.time() * 1000)})
		return f"{self.admin_base_url}{IMAGINE_PATH}/sse?{query}"
