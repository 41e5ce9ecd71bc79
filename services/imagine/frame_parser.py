"""Incremental Server-Sent-Events frame parser."""

from __future__ import annotations

import json
import re
from typing import List, Optional, Tuple

from models.stream_models import SseEvent

_SEGMENT_SPLIT = re.compile(r"\r?\n\r?\n")
_LINE_SPLIT = re.compile(r"\r?\n")
DONE_SENTINEL = "[DONE]"


def _split_segment(segment: str) -> Tuple[str, Optional[str]]:
	"""Return `(event_name, joined_data)`; data is None when no data lines exist."""
	event = "message"
	data_lines: List[str] = []
	for line in _LINE_SPLIT.split(segment or ""):
		text = line.rstrip()
		if not text or text.startswith(":"):
			continue
		if text.startswith("event:"):
			name = text[6:].strip()
			if name:
				event = name
			continue
		if text.startswith("data:"):
			data_lines.append(text[5:].strip())
	if not data_lines:
		return event, None
	return event, "\n".join(data_lines).strip()


def parse_sse_segment(segment: str) -> Optional[SseEvent]:
	"""Parse one blank-line-delimited SSE record.

	Comment lines are skipped, multiple `data:` lines are joined with newlines,
	and records without data or carrying the `[DONE]` sentinel yield None.
	"""
	event, raw_data = _split_segment(segment)
	if not raw_data or raw_data == DONE_SENTINEL:
		return None
	try:
		parsed = json.loads(raw_data)
	except json.JSONDecodeError:
		parsed = None
	return SseEvent(event=event, raw_data=raw_data, data=parsed if isinstance(parsed, dict) else None)


def consume_sse_text_buffer(previous_buffer: str, incoming_chunk: str) -> Tuple[List[SseEvent], str]:
	"""Append a chunk to the pending buffer and split off complete records.

	Returns:
		`(events, remaining_buffer)`; the remainder is an incomplete record.
	"""
	merged = f"{previous_buffer or ''}{incoming_chunk or ''}"
	if not merged:
		return [], ""
	segments = _SEGMENT_SPLIT.split(merged)
	buffer = segments.pop()
	events = [event for event in (parse_sse_segment(segment) for segment in segments) if event]
	return events, buffer


class SseFrameParser:
	"""Stateful parser fed with arbitrary chunks of an event stream.

	`done` flips to True once a `[DONE]` record has been seen.
	"""

	def __init__(self) -> None:
		self.buffer = ""
		self.done = False

	def feed(self, chunk: str | bytes) -> List[SseEvent]:
		if isinstance(chunk, bytes):
			chunk = chunk.decode("utf-8", errors="replace")
		segments = _SEGMENT_SPLIT.split(self.buffer + (chunk or ""))
		self.buffer = segments.pop()
		return self._parse_segments(segments)

	def flush(self) -> List[SseEvent]:
		"""Parse whatever remains once the stream has ended."""
		remaining, self.buffer = self.buffer, ""
		return self._parse_segments([remaining]) if remaining.strip() else []

	def _parse_segments(self, segments: List[str]) -> List[SseEvent]:
		events: List[SseEvent] = []
		for segment in segments:
			if _split_segment(segment)[1] == DONE_SENTINEL:
				self.done = True
				continue
			event = parse_sse_segment(segment)
			if event:
				events.append(event)
		return events
