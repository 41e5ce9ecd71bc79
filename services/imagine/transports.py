"""Live-update connections: one interface, a WebSocket and an SSE adapter.

Each connection runs in its own background task and reports through four
async handlers: `on_open(conn)`, `on_message(conn, text)`,
`on_error(conn, exc)` and `on_close(conn)`. `on_close` fires only when the
remote side ends the connection; a local `close()` is silent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from models.stream_models import TransportKind
from services.imagine.frame_parser import SseFrameParser
from utils.errors import TransportError

LOGGER = logging.getLogger(__name__)

OpenHandler = Callable[["LiveUpdateConnection"], Awaitable[None]]
MessageHandler = Callable[["LiveUpdateConnection", str], Awaitable[None]]
ErrorHandler = Callable[["LiveUpdateConnection", BaseException], Awaitable[None]]
CloseHandler = Callable[["LiveUpdateConnection"], Awaitable[None]]


class LiveUpdateConnection:
	"""Base class for a single per-task live-update channel."""

	kind: TransportKind

	def __init__(
		self,
		url: str,
		*,
		on_open: OpenHandler,
		on_message: MessageHandler,
		on_error: ErrorHandler,
		on_close: CloseHandler,
	) -> None:
		self.url = url
		self._on_open = on_open
		self._on_message = on_message
		self._on_error = on_error
		self._on_close = on_close
		self._task: Optional[asyncio.Task] = None
		self._closing = False
		self.opened = False

	def open(self) -> None:
		"""Start the connection in the background."""
		if self._task is None:
			self._task = asyncio.create_task(self._run(), name=f"{self.kind.value}-connection")

	async def send(self, payload: Dict[str, Any]) -> bool:
		"""Send a control frame; transports without an upstream channel return False."""
		return False

	async def close(self) -> None:
		"""Close locally without reporting `on_close`."""
		self._closing = True
		await self._shutdown()
		task = self._task
		if task is not None and not task.done() and task is not asyncio.current_task():
			task.cancel()
			await asyncio.wait({task})

	async def _run(self) -> None:
		try:
			await self._serve()
		except asyncio.CancelledError:
			raise
		except Exception as exc:  # pylint: disable=broad-exception-caught
			if not self._closing:
				LOGGER.info("%s connection to %s failed: %s", self.kind.value, self.url, exc)
				await self._on_error(self, exc)
		finally:
			if not self._closing:
				self._closing = True
				await self._on_close(self)

	async def _serve(self) -> None:
		raise NotImplementedError

	async def _shutdown(self) -> None:
		return None


class WebSocketConnection(LiveUpdateConnection):
	"""WebSocket adapter built on the `websockets` client."""

	kind = TransportKind.WS

	def __init__(self, url: str, *, open_timeout: float = 10.0, **handlers: Any) -> None:
		super().__init__(url, **handlers)
		self.open_timeout = open_timeout
		self._ws = None

	async def send(self, payload: Dict[str, Any]) -> bool:
		if self._ws is None:
			return False
		try:
			await self._ws.send(json.dumps(payload))
		except ConnectionClosed:
			return False
		return True

	async def _serve(self) -> None:
		async with websockets.connect(self.url, open_timeout=self.open_timeout, max_size=None) as ws:
			self._ws = ws
			self.opened = True
			await self._on_open(self)
			async for message in ws:
				if self._closing:
					break
				if isinstance(message, bytes):
					message = message.decode("utf-8", errors="replace")
				await self._on_message(self, message)

	async def _shutdown(self) -> None:
		ws, self._ws = self._ws, None
		if ws is not None:
			try:
				await ws.close()
			except ConnectionClosed:
				pass


class EventSourceConnection(LiveUpdateConnection):
	"""Server-Sent-Events adapter over a streaming `httpx` GET."""

	kind = TransportKind.SSE

	def __init__(
		self,
		url: str,
		*,
		client: Optional[httpx.AsyncClient] = None,
		connect_timeout: float = 10.0,
		**handlers: Any,
	) -> None:
		super().__init__(url, **handlers)
		self._client = client
		self.connect_timeout = connect_timeout

	async def _serve(self) -> None:
		client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=self.connect_timeout))
		headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
		try:
			async with client.stream("GET", self.url, headers=headers) as response:
				if not response.is_success:
					raise TransportError(f"SSE HTTP {response.status_code}", code="SSE_HTTP_ERROR")
				self.opened = True
				await self._on_open(self)
				parser = SseFrameParser()
				async for chunk in response.aiter_text():
					for event in parser.feed(chunk):
						if self._closing:
							return
						await self._on_message(self, event.raw_data)
					if parser.done or self._closing:
						return
				for event in parser.flush():
					await self._on_message(self, event.raw_data)
		finally:
			if self._client is None:
				await client.aclose()


def open_live_connection(kind: TransportKind, url: str, **handlers: Any) -> LiveUpdateConnection:
	"""Default connection factory used by the orchestrator."""
	if kind is TransportKind.WS:
		return WebSocketConnection(url, **handlers)
	return EventSourceConnection(url, **handlers)
