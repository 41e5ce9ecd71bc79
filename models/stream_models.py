"""Domain models for streaming generation sessions."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union


class SessionState(str, enum.Enum):
	IDLE = "idle"
	STARTING = "starting"
	RUNNING = "running"
	STOPPING = "stopping"


class TransportKind(str, enum.Enum):
	WS = "ws"
	SSE = "sse"


@dataclass(frozen=True)
class ImageRef:
	"""One extracted image reference (remote URL or inline data URL)."""

	url: str
	source: str = "content"


@dataclass
class GenerationTask:
	"""Remote generation job tracked by its server-issued id."""

	task_id: str
	transport: Optional[TransportKind] = None
	connection: Any = None


@dataclass
class StreamParams:
	"""Inputs for a multi-task streaming run."""

	prompt: str
	admin_base_url: str
	base_url: str = ""
	aspect_ratio: str = "1:1"
	concurrency: int = 1
	transport: str = "auto"


@dataclass
class EditStreamParams:
	"""Inputs for a single streaming `/images/edits` request."""

	base_url: str
	prompt: str
	image: bytes
	image_filename: str = "image.png"
	image_mime: str = "image/png"
	model: str = ""
	size: str = ""
	n: int = 1
	api_key: str = ""


@dataclass
class StreamSession:
	"""State owned by one orchestration run, identified by its epoch."""

	epoch: int
	kind: str
	prompt: str = ""
	aspect_ratio: str = "1:1"
	base_url: str = ""
	admin_base_url: str = ""
	concurrency: int = 1
	transport_preference: str = "auto"
	transport: Optional[TransportKind] = None
	committed: bool = False
	fallback_done: bool = False
	tasks: List[GenerationTask] = field(default_factory=list)
	open_connections: Set[Any] = field(default_factory=set)
	opened_count: int = 0
	results: List[ImageRef] = field(default_factory=list)
	seen_urls: Set[str] = field(default_factory=set)

	@property
	def task_ids(self) -> List[str]:
		return [task.task_id for task in self.tasks]

	def add_results(self, images: List[ImageRef]) -> List[ImageRef]:
		"""Append unseen images in arrival order and return only the new ones."""
		added: List[ImageRef] = []
		for image in images:
			if not image.url or image.url in self.seen_urls:
				continue
			self.seen_urls.add(image.url)
			self.results.append(image)
			added.append(image)
		return added


@dataclass(frozen=True)
class SseEvent:
	"""One parsed Server-Sent-Events record."""

	event: str
	raw_data: str
	data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ErrorPayload:
	message: str


@dataclass(frozen=True)
class StatusPayload:
	text: str


@dataclass(frozen=True)
class ImageBatchPayload:
	images: List[ImageRef]


@dataclass(frozen=True)
class UnknownPayload:
	raw: Any


StreamPayload = Union[ErrorPayload, StatusPayload, ImageBatchPayload, UnknownPayload]
