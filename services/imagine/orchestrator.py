"""Streaming generation orchestrator.

Owns one session at a time. Every session carries an integer epoch; all
network callbacks capture the epoch they were created under and are dropped
once a newer session starts or the current one stops.

Notifications are plain dicts passed to the emitter:

	{"type": "state", "state": "running", "transport": "ws"}
	{"type": "status", "text": "..."}
	{"type": "images", "images": [{"url": ..., "source": ...}], "total": 3}
	{"type": "error", "message": "...", "fatal": False}
	{"type": "ended", "reason": "manual", "total": 3}
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from models.stream_models import (
	EditStreamParams,
	ErrorPayload,
	GenerationTask,
	ImageBatchPayload,
	ImageRef,
	SessionState,
	SseEvent,
	StatusPayload,
	StreamParams,
	StreamSession,
	TransportKind,
)
from services.imagine.admin_client import ImagineAdminClient, pick_error, sanitize_base_url
from services.imagine.frame_parser import SseFrameParser
from services.imagine.image_extraction import parse_stream_payload
from services.imagine.transports import LiveUpdateConnection, open_live_connection
from utils.errors import UpstreamError, to_error_message

LOGGER = logging.getLogger(__name__)

FALLBACK_DELAY = 1.5
MAX_CONCURRENCY = 3
TRANSPORT_PREFERENCES = ("auto", "ws", "sse")

Emitter = Callable[[Dict[str, Any]], Any]
AdminClientFactory = Callable[[str], Any]
ConnectionFactory = Callable[..., LiveUpdateConnection]


def clamp_concurrency(value: Any) -> int:
	try:
		number = int(value)
	except (TypeError, ValueError):
		return 1
	return max(1, min(number, MAX_CONCURRENCY))


def _image_dicts(images: List[ImageRef]) -> List[Dict[str, str]]:
	return [{"url": image.url, "source": image.source} for image in images]


class ImagineStreamOrchestrator:
	"""Drive remote generation tasks over WebSocket or SSE with auto-fallback.

	Args:
		emitter: Callable receiving notification dicts; may be sync or async.
		api_key: Bearer token for the admin RPCs.
		admin_client_factory: Builds an admin client for a given admin base URL.
		connection_factory: Builds a live-update connection for `(kind, url, **handlers)`.
		http_client: Optional shared client for the edit stream.
		fallback_delay: Seconds to wait for a WebSocket open before switching to SSE.
	"""

	def __init__(
		self,
		emitter: Emitter,
		*,
		api_key: str = "",
		admin_client_factory: Optional[AdminClientFactory] = None,
		connection_factory: Optional[ConnectionFactory] = None,
		http_client: Optional[httpx.AsyncClient] = None,
		fallback_delay: float = FALLBACK_DELAY,
	) -> None:
		self._emitter = emitter
		self._admin_client_factory = admin_client_factory or (lambda base: ImagineAdminClient(base, api_key))
		self._connection_factory = connection_factory or open_live_connection
		self._http_client = http_client
		self.fallback_delay = fallback_delay

		self.state = SessionState.IDLE
		self.session: Optional[StreamSession] = None
		self._epoch = 0
		self._admin: Any = None
		self._fallback_task: Optional[asyncio.Task] = None
		self._edit_task: Optional[asyncio.Task] = None
		self._background: Set[asyncio.Task] = set()

	@property
	def epoch(self) -> int:
		return self._epoch

	@property
	def results(self) -> List[ImageRef]:
		return list(self.session.results) if self.session else []

	def _is_current(self, epoch: int) -> bool:
		return epoch == self._epoch and self.session is not None and self.session.epoch == epoch

	async def _notify(self, payload: Dict[str, Any]) -> None:
		result = self._emitter(payload)
		if inspect.isawaitable(result):
			await result

	async def _set_state(self, epoch: int, state: SessionState) -> None:
		if not self._is_current(epoch):
			return
		self.state = state
		transport = self.session.transport.value if self.session.transport else None
		await self._notify({"type": "state", "state": state.value, "transport": transport})

	async def start(self, params: StreamParams) -> Optional[StreamSession]:
		"""Create the remote tasks and open one live connection per task.

		Returns the new session, or None when it was superseded before its
		connections opened. Raises the task-creation error after rolling back
		the tasks already created.
		"""
		self._supersede()
		epoch = self._epoch
		preference = params.transport if params.transport in TRANSPORT_PREFERENCES else "auto"
		session = StreamSession(
			epoch=epoch,
			kind="tasks",
			prompt=params.prompt,
			aspect_ratio=params.aspect_ratio,
			base_url=sanitize_base_url(params.base_url or params.admin_base_url),
			admin_base_url=sanitize_base_url(params.admin_base_url),
			concurrency=clamp_concurrency(params.concurrency),
			transport_preference=preference,
		)
		admin = self._admin_client_factory(session.admin_base_url)
		self.session = session
		self._admin = admin
		await self._set_state(epoch, SessionState.STARTING)

		try:
			for _ in range(session.concurrency):
				task_id = await admin.start_task(session.prompt, session.aspect_ratio)
				session.tasks.append(GenerationTask(task_id=task_id))
				if not self._is_current(epoch):
					LOGGER.info("Session %s superseded during task creation; rolling back", epoch)
					await self._stop_remote(admin, session.task_ids)
					return None
		except Exception as exc:
			await self._stop_remote(admin, session.task_ids)
			if not self._is_current(epoch):
				return None
			LOGGER.error("Failed to create imagine tasks: %s", exc)
			self.session = None
			self._admin = None
			self.state = SessionState.IDLE
			await self._notify({"type": "error", "message": to_error_message(exc), "fatal": True})
			await self._notify({"type": "state", "state": SessionState.IDLE.value, "transport": None})
			raise

		if preference == "sse":
			session.transport = TransportKind.SSE
			session.committed = True
		else:
			session.transport = TransportKind.WS
		await self._set_state(epoch, SessionState.RUNNING)
		if not self._is_current(epoch):
			return None
		self._open_transport(epoch, session, admin, session.transport)
		if preference == "auto":
			self._fallback_task = asyncio.create_task(self._fallback_after(epoch, self.fallback_delay))
		return session

	async def stop(self, reason: str = "manual") -> None:
		"""Invalidate the current session, tear it down and emit `ended`."""
		detached = self._detach()
		if detached is None:
			return
		session, admin, previous_state, edit_task = detached
		epoch_after_stop = self._epoch
		self.state = SessionState.STOPPING
		await self._notify({"type": "state", "state": SessionState.STOPPING.value, "transport": None})
		await self._teardown(session, admin, previous_state, edit_task)
		if self._epoch == epoch_after_stop:
			self.state = SessionState.IDLE
			await self._notify({"type": "state", "state": SessionState.IDLE.value, "transport": None})
		await self._notify({"type": "ended", "reason": reason, "total": len(session.results)})

	async def aclose(self) -> None:
		await self.stop(reason="shutdown")
		if self._background:
			await asyncio.wait(set(self._background))

	def _detach(self):
		"""Bump the epoch and hand back what the old session still owns."""
		self._epoch += 1
		session, self.session = self.session, None
		admin, self._admin = self._admin, None
		previous_state = self.state
		fallback, self._fallback_task = self._fallback_task, None
		if fallback is not None and fallback is not asyncio.current_task():
			fallback.cancel()
		edit_task, self._edit_task = self._edit_task, None
		if session is None:
			return None
		return session, admin, previous_state, edit_task

	def _supersede(self) -> None:
		"""Drop the current session without waiting for its connections."""
		detached = self._detach()
		if detached is None:
			return
		LOGGER.info("Superseding session %s", detached[0].epoch)
		task = asyncio.create_task(self._teardown(*detached))
		self._background.add(task)
		task.add_done_callback(self._background.discard)

	async def _teardown(
		self,
		session: StreamSession,
		admin: Any,
		previous_state: SessionState,
		edit_task: Optional[asyncio.Task],
	) -> None:
		if session.kind == "edit":
			if edit_task is not None and not edit_task.done() and edit_task is not asyncio.current_task():
				edit_task.cancel()
				await asyncio.wait({edit_task})
			return

		connections = list(session.open_connections)
		session.open_connections.clear()
		for conn in connections:
			try:
				if conn.kind is TransportKind.WS:
					await conn.send({"type": "stop"})
				await conn.close()
			except Exception as exc:  # pylint: disable=broad-exception-caught
				LOGGER.warning("Closing %s connection failed: %s", conn.kind.value, exc)
		# Task creation in progress rolls itself back once it notices the new epoch.
		if previous_state is not SessionState.STARTING:
			await self._stop_remote(admin, session.task_ids)

	async def _stop_remote(self, admin: Any, task_ids: List[str]) -> None:
		if admin is None or not task_ids:
			return
		try:
			await admin.stop_tasks(task_ids)
		except Exception as exc:  # pylint: disable=broad-exception-caught
			LOGGER.warning("Best-effort stop of tasks %s failed: %s", ", ".join(task_ids), exc)

	def _open_transport(self, epoch: int, session: StreamSession, admin: Any, kind: TransportKind) -> None:
		for task in session.tasks:
			url = admin.ws_url(task.task_id) if kind is TransportKind.WS else admin.sse_url(task.task_id)
			conn = self._connection_factory(
				kind,
				url,
				on_open=partial(self._on_open, epoch, task),
				on_message=partial(self._on_message, epoch, task),
				on_error=partial(self._on_error, epoch, task),
				on_close=partial(self._on_close, epoch, task),
			)
			task.transport = kind
			task.connection = conn
			session.open_connections.add(conn)
			conn.open()
		LOGGER.info("Opened %d %s connection(s) for session %s", len(session.tasks), kind.value, epoch)

	def _accepts(self, epoch: int, conn: LiveUpdateConnection) -> bool:
		return self._is_current(epoch) and conn in self.session.open_connections

	async def _fallback_after(self, epoch: int, delay: float) -> None:
		await asyncio.sleep(delay)
		session = self.session
		if not self._is_current(epoch) or session.committed or session.fallback_done or session.opened_count:
			return
		await self._fallback_to_sse(epoch, "WebSocket did not open in time")

	async def _fallback_to_sse(self, epoch: int, why: str) -> None:
		session = self.session
		session.fallback_done = True
		session.committed = True
		fallback, self._fallback_task = self._fallback_task, None
		if fallback is not None and fallback is not asyncio.current_task():
			fallback.cancel()

		stale = list(session.open_connections)
		session.open_connections.clear()
		session.transport = TransportKind.SSE
		LOGGER.info("Session %s falling back to SSE: %s", epoch, why)
		self._open_transport(epoch, session, self._admin, TransportKind.SSE)
		for conn in stale:
			try:
				await conn.close()
			except Exception as exc:  # pylint: disable=broad-exception-caught
				LOGGER.warning("Closing stale %s connection failed: %s", conn.kind.value, exc)
		if self._is_current(epoch):
			await self._notify({"type": "status", "text": f"{why}; switched to SSE"})
			await self._set_state(epoch, SessionState.RUNNING)

	async def _on_open(self, epoch: int, task: GenerationTask, conn: LiveUpdateConnection) -> None:
		if not self._accepts(epoch, conn):
			return
		session = self.session
		session.opened_count += 1
		if conn.kind is TransportKind.WS:
			if not session.committed:
				session.committed = True
				fallback, self._fallback_task = self._fallback_task, None
				if fallback is not None:
					fallback.cancel()
				LOGGER.info("Session %s committed to WebSocket", epoch)
			await conn.send({"type": "start", "prompt": session.prompt, "aspect_ratio": session.aspect_ratio})
		await self._notify({"type": "status", "text": f"Connected ({conn.kind.value}) for task {task.task_id}"})

	async def _on_message(self, epoch: int, task: GenerationTask, conn: LiveUpdateConnection, raw: str) -> None:
		if not self._accepts(epoch, conn):
			return
		try:
			payload = json.loads(raw)
		except (TypeError, ValueError):
			LOGGER.debug("Ignoring non-JSON frame from task %s", task.task_id)
			return
		await self._dispatch(epoch, payload, task_id=task.task_id)

	async def _dispatch(self, epoch: int, payload: Any, task_id: Optional[str] = None) -> None:
		session = self.session
		parsed = parse_stream_payload(payload, session.base_url)
		if isinstance(parsed, ErrorPayload):
			notification = {"type": "error", "message": parsed.message, "fatal": False}
			if task_id:
				notification["task_id"] = task_id
			await self._notify(notification)
		elif isinstance(parsed, StatusPayload):
			if parsed.text:
				await self._notify({"type": "status", "text": parsed.text})
		elif isinstance(parsed, ImageBatchPayload):
			added = session.add_results(parsed.images)
			if added:
				await self._notify({"type": "images", "images": _image_dicts(added), "total": len(session.results)})

	async def _on_error(self, epoch: int, task: GenerationTask, conn: LiveUpdateConnection, exc: BaseException) -> None:
		if not self._accepts(epoch, conn):
			return
		session = self.session
		if session.transport_preference == "auto" and not session.committed:
			LOGGER.info("WebSocket attempt for task %s failed before open: %s", task.task_id, exc)
			return
		await self._notify({
			"type": "error",
			"message": f"{conn.kind.value} connection error for task {task.task_id}: {to_error_message(exc)}",
			"fatal": False,
			"task_id": task.task_id,
		})

	async def _on_close(self, epoch: int, task: GenerationTask, conn: LiveUpdateConnection) -> None:
		if not self._accepts(epoch, conn):
			return
		session = self.session
		session.open_connections.discard(conn)
		if session.open_connections:
			return
		if (
			session.transport_preference == "auto"
			and session.transport is TransportKind.WS
			and not session.fallback_done
			and session.opened_count == 0
		):
			await self._fallback_to_sse(epoch, "WebSocket closed before opening")
			return
		LOGGER.info("All connections closed for session %s", epoch)
		await self.stop(reason="completed")

	async def start_edit_stream(self, params: EditStreamParams) -> Optional[StreamSession]:
		"""Run one streaming `/images/edits` request under a fresh epoch."""
		self._supersede()
		epoch = self._epoch
		session = StreamSession(
			epoch=epoch,
			kind="edit",
			prompt=params.prompt,
			base_url=sanitize_base_url(params.base_url),
		)
		self.session = session
		await self._set_state(epoch, SessionState.STARTING)
		if not self._is_current(epoch):
			return None
		self._edit_task = asyncio.create_task(self._run_edit_stream(epoch, params))
		return session

	async def _run_edit_stream(self, epoch: int, params: EditStreamParams) -> None:
		if not self._is_current(epoch):
			return
		url = f"{sanitize_base_url(params.base_url)}/images/edits"
		data = {"prompt": params.prompt, "stream": "true", "n": str(max(1, int(params.n or 1)))}
		if params.model:
			data["model"] = params.model
		if params.size:
			data["size"] = params.size
		files = {"image": (params.image_filename, params.image, params.image_mime)}
		headers = {"Accept": "text/event-stream"}
		if params.api_key:
			headers["Authorization"] = f"Bearer {params.api_key}"

		client = self._http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=15.0))
		parser = SseFrameParser()
		reason = "completed"
		try:
			async with client.stream("POST", url, data=data, files=files, headers=headers) as response:
				if not response.is_success:
					body = (await response.aread()).decode("utf-8", errors="replace")
					try:
						detail = pick_error(json.loads(body))
					except ValueError:
						detail = pick_error(body)
					raise UpstreamError(
						f"HTTP {response.status_code}" + (f" - {detail}" if detail else ""),
						code="EDIT_STREAM_HTTP_ERROR",
					)
				await self._set_state(epoch, SessionState.RUNNING)
				async for chunk in response.aiter_text():
					if not self._is_current(epoch):
						return
					await self._dispatch_edit_events(epoch, parser.feed(chunk))
					if parser.done:
						break
				await self._dispatch_edit_events(epoch, parser.flush())
		except asyncio.CancelledError:
			raise
		except Exception as exc:  # pylint: disable=broad-exception-caught
			if not self._is_current(epoch):
				return
			LOGGER.error("Edit stream failed: %s", exc)
			await self._notify({"type": "error", "message": to_error_message(exc), "fatal": True})
			reason = "error"
		finally:
			if self._http_client is None:
				await client.aclose()

		if self._is_current(epoch):
			await self.stop(reason=reason)

	async def _dispatch_edit_events(self, epoch: int, events: List[SseEvent]) -> None:
		for event in events:
			if not self._is_current(epoch):
				return
			if event.data is None:
				continue
			payload = event.data
			if event.event == "error" and payload.get("type") != "error":
				payload = {"type": "error", "error": payload.get("error", payload)}
			await self._dispatch(epoch, payload)
