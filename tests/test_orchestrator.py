import asyncio
import json

import httpx
import pytest

from models.stream_models import EditStreamParams, SessionState, StreamParams, TransportKind
from services.imagine.orchestrator import ImagineStreamOrchestrator
from utils.errors import UpstreamError


class FakeAdmin:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.created = []
        self.stopped = []
        self.calls = 0

    async def start_task(self, prompt, aspect_ratio):
        self.calls += 1
        if self.fail_on == self.calls:
            raise UpstreamError("HTTP 500 - admin exploded", code="ADMIN_RPC_FAILED")
        task_id = f"task-{self.calls}"
        self.created.append(task_id)
        return task_id

    async def stop_tasks(self, task_ids):
        self.stopped.append(list(task_ids))

    def ws_url(self, task_id):
        return f"ws://admin.local/ws?task_id={task_id}"

    def sse_url(self, task_id):
        return f"http://admin.local/sse?task_id={task_id}"


class GatedAdmin(FakeAdmin):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def start_task(self, prompt, aspect_ratio):
        self.entered.set()
        await self.gate.wait()
        return await super().start_task(prompt, aspect_ratio)


class FakeConnection:
    def __init__(self, kind, url, **handlers):
        self.kind = kind
        self.url = url
        self.handlers = handlers
        self.started = False
        self.closed = False
        self.sent = []

    def open(self):
        self.started = True

    async def send(self, payload):
        self.sent.append(payload)
        return True

    async def close(self):
        self.closed = True

    async def remote_open(self):
        await self.handlers["on_open"](self)

    async def remote_message(self, payload):
        await self.handlers["on_message"](self, json.dumps(payload))

    async def remote_error(self, exc):
        await self.handlers["on_error"](self, exc)

    async def remote_close(self):
        await self.handlers["on_close"](self)


class ConnectionRecorder:
    def __init__(self):
        self.connections = []

    def __call__(self, kind, url, **handlers):
        conn = FakeConnection(kind, url, **handlers)
        self.connections.append(conn)
        return conn

    def of(self, kind):
        return [conn for conn in self.connections if conn.kind is kind]


def _build(admin=None, fallback_delay=1.5, **kwargs):
    events = []
    admin = admin or FakeAdmin()
    recorder = ConnectionRecorder()

    async def emit(event):
        events.append(event)

    orchestrator = ImagineStreamOrchestrator(
        emit,
        admin_client_factory=lambda base: admin,
        connection_factory=recorder,
        fallback_delay=fallback_delay,
        **kwargs,
    )
    return orchestrator, admin, recorder, events


def _params(**overrides):
    values = {"prompt": "a red fox", "admin_base_url": "http://127.0.0.1:8000", "aspect_ratio": "16:9"}
    values.update(overrides)
    return StreamParams(**values)


def _of_type(events, kind):
    return [event for event in events if event["type"] == kind]


@pytest.mark.asyncio
async def test_websocket_session_streams_images_and_stops_cleanly():
    orchestrator, admin, recorder, events = _build()

    session = await orchestrator.start(_params(transport="ws", concurrency=2))

    assert session.task_ids == ["task-1", "task-2"]
    assert orchestrator.state is SessionState.RUNNING
    ws = recorder.of(TransportKind.WS)
    assert [conn.url for conn in ws] == [admin.ws_url("task-1"), admin.ws_url("task-2")]
    assert all(conn.started for conn in ws)

    await ws[0].remote_open()
    assert ws[0].sent == [{"type": "start", "prompt": "a red fox", "aspect_ratio": "16:9"}]

    await ws[0].remote_message({"type": "image", "url": "http://cdn.example.com/1.png"})
    await ws[1].remote_message({"type": "image", "url": "http://cdn.example.com/1.png"})
    await ws[1].remote_message({"type": "image", "b64_json": "AAAA"})

    images = _of_type(events, "images")
    assert [event["images"][0]["url"] for event in images] == [
        "http://cdn.example.com/1.png",
        "data:image/png;base64,AAAA",
    ]
    assert images[-1]["total"] == 2
    assert [image.url for image in orchestrator.results] == [
        "http://cdn.example.com/1.png",
        "data:image/png;base64,AAAA",
    ]

    await orchestrator.stop()

    assert all({"type": "stop"} in conn.sent and conn.closed for conn in ws)
    assert admin.stopped == [["task-1", "task-2"]]
    assert orchestrator.state is SessionState.IDLE
    assert events[-1] == {"type": "ended", "reason": "manual", "total": 2}
    assert [event["state"] for event in _of_type(events, "state")] == ["starting", "running", "stopping", "idle"]


@pytest.mark.asyncio
async def test_callbacks_after_stop_are_ignored():
    orchestrator, _, recorder, events = _build()
    await orchestrator.start(_params(transport="ws"))
    conn = recorder.of(TransportKind.WS)[0]
    await conn.remote_open()

    await orchestrator.stop()
    seen = len(events)

    await conn.remote_message({"type": "image", "url": "http://cdn.example.com/late.png"})
    await conn.remote_message({"type": "status", "message": "late"})
    await conn.remote_error(RuntimeError("late"))
    await conn.remote_close()

    assert len(events) == seen
    assert orchestrator.results == []


@pytest.mark.asyncio
async def test_error_frames_are_not_fatal():
    orchestrator, _, recorder, events = _build()
    await orchestrator.start(_params(transport="sse"))
    conn = recorder.of(TransportKind.SSE)[0]
    await conn.remote_open()

    await conn.remote_message({"type": "error", "message": "quota exceeded"})
    await conn.remote_message({"type": "status", "message": "rendering"})

    assert _of_type(events, "error") == [
        {"type": "error", "message": "quota exceeded", "fatal": False, "task_id": "task-1"}
    ]
    assert _of_type(events, "status")[-1] == {"type": "status", "text": "rendering"}
    assert orchestrator.state is SessionState.RUNNING
    assert conn.sent == []


@pytest.mark.asyncio
async def test_auto_falls_back_to_sse_once_when_websocket_never_opens():
    orchestrator, _, recorder, events = _build(fallback_delay=0.01)
    await orchestrator.start(_params(concurrency=2))
    ws = recorder.of(TransportKind.WS)

    await asyncio.sleep(0.05)

    sse = recorder.of(TransportKind.SSE)
    assert len(sse) == 2
    assert all(conn.closed for conn in ws)
    assert orchestrator.session.transport is TransportKind.SSE

    await ws[0].remote_open()
    await ws[0].remote_message({"type": "image", "url": "http://cdn.example.com/ws.png"})
    await sse[0].remote_message({"type": "image", "url": "http://cdn.example.com/sse.png"})

    urls = [image["url"] for event in _of_type(events, "images") for image in event["images"]]
    assert urls == ["http://cdn.example.com/sse.png"]

    await asyncio.sleep(0.05)
    assert len(recorder.of(TransportKind.SSE)) == 2
    assert _of_type(events, "state")[-1] == {"type": "state", "state": "running", "transport": "sse"}
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_first_websocket_open_commits_the_session():
    orchestrator, _, recorder, _ = _build(fallback_delay=0.02)
    await orchestrator.start(_params(concurrency=2))

    await recorder.of(TransportKind.WS)[1].remote_open()
    await asyncio.sleep(0.06)

    assert recorder.of(TransportKind.SSE) == []
    assert orchestrator.session.committed is True
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_websockets_closing_before_open_fall_back_immediately():
    orchestrator, admin, recorder, events = _build(fallback_delay=30)
    await orchestrator.start(_params(concurrency=2))

    for conn in recorder.of(TransportKind.WS):
        await conn.remote_close()

    sse = recorder.of(TransportKind.SSE)
    assert len(sse) == 2

    for conn in sse:
        await conn.remote_close()

    assert len(recorder.of(TransportKind.SSE)) == 2
    assert orchestrator.state is SessionState.IDLE
    assert events[-1]["type"] == "ended"
    assert events[-1]["reason"] == "completed"
    assert not [event for event in _of_type(events, "error") if event["fatal"]]
    assert admin.stopped == [["task-1", "task-2"]]


@pytest.mark.asyncio
async def test_all_connections_closing_is_an_implicit_stop():
    orchestrator, _, recorder, events = _build()
    await orchestrator.start(_params(transport="ws"))
    conn = recorder.of(TransportKind.WS)[0]
    await conn.remote_open()

    await conn.remote_close()

    assert orchestrator.state is SessionState.IDLE
    assert orchestrator.session is None
    assert events[-1]["type"] == "ended"


@pytest.mark.asyncio
async def test_task_creation_failure_rolls_back_created_tasks():
    orchestrator, admin, recorder, events = _build(admin=FakeAdmin(fail_on=3))

    with pytest.raises(UpstreamError):
        await orchestrator.start(_params(concurrency=3))

    assert admin.stopped == [["task-1", "task-2"]]
    assert recorder.connections == []
    assert orchestrator.state is SessionState.IDLE
    assert orchestrator.session is None
    fatal = [event for event in _of_type(events, "error") if event["fatal"]]
    assert fatal and "admin exploded" in fatal[0]["message"]


@pytest.mark.asyncio
async def test_stop_during_task_creation_rolls_back_without_opening():
    admin = GatedAdmin()
    orchestrator, _, recorder, events = _build(admin=admin)

    starting = asyncio.create_task(orchestrator.start(_params(concurrency=3)))
    await admin.entered.wait()
    await orchestrator.stop()
    admin.gate.set()

    assert await starting is None
    assert admin.created == ["task-1"]
    assert admin.stopped == [["task-1"]]
    assert recorder.connections == []
    assert orchestrator.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_concurrency_is_clamped():
    orchestrator, admin, _, _ = _build()

    session = await orchestrator.start(_params(transport="sse", concurrency=9))
    assert len(session.tasks) == 3
    await orchestrator.stop()

    session = await orchestrator.start(_params(transport="sse", concurrency=0))
    assert len(session.tasks) == 1
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_new_start_supersedes_previous_session():
    orchestrator, admin, recorder, events = _build()
    await orchestrator.start(_params(transport="ws"))
    old = recorder.of(TransportKind.WS)[0]

    await orchestrator.start(_params(transport="sse"))
    await asyncio.sleep(0.01)

    assert old.closed is True
    assert ["task-1"] in admin.stopped
    await old.remote_message({"type": "image", "url": "http://cdn.example.com/old.png"})
    assert _of_type(events, "images") == []
    assert orchestrator.session.task_ids == ["task-2"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_sync_emitter_is_supported():
    events = []
    recorder = ConnectionRecorder()
    orchestrator = ImagineStreamOrchestrator(
        events.append,
        admin_client_factory=lambda base: FakeAdmin(),
        connection_factory=recorder,
    )

    await orchestrator.start(_params(transport="sse"))
    await orchestrator.stop("done")

    assert events[-1]["type"] == "ended"
    assert events[-1]["reason"] == "done"


def _edit_params():
    return EditStreamParams(
        base_url="http://api.example.com/v1/",
        prompt="make it blue",
        image=b"\x89PNG fake",
        model="gpt-image-1",
        api_key="sk-test",
    )


async def _run_edit(handler):
    events = []
    ended = asyncio.Event()

    async def emit(event):
        events.append(event)
        if event["type"] == "ended":
            ended.set()

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    orchestrator = ImagineStreamOrchestrator(emit, http_client=client)
    session = await orchestrator.start_edit_stream(_edit_params())
    await asyncio.wait_for(ended.wait(), timeout=2)
    await client.aclose()
    return orchestrator, session, events


@pytest.mark.asyncio
async def test_edit_stream_emits_partial_and_final_images():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = request.read()
        body = (
            "event: image_edit.partial_image\n"
            "data: {\"type\":\"image_edit.partial_image\",\"b64_json\":\"AAAA\"}\n\n"
            "data: {\"type\":\"image_edit.completed\",\"b64_json\":\"BBBB\"}\n\n"
            "data: [DONE]\n\n"
        )
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())

    orchestrator, session, events = await _run_edit(handler)

    assert session.kind == "edit"
    assert captured["url"] == "http://api.example.com/v1/images/edits"
    assert captured["auth"] == "Bearer sk-test"
    assert b'name="stream"' in captured["body"]
    assert b'name="image"; filename="image.png"' in captured["body"]
    urls = [image["url"] for event in _of_type(events, "images") for image in event["images"]]
    assert urls == ["data:image/png;base64,AAAA", "data:image/png;base64,BBBB"]
    assert events[-1] == {"type": "ended", "reason": "completed", "total": 2}
    assert orchestrator.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_edit_stream_http_error_is_fatal():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "image too small"}})

    orchestrator, _, events = await _run_edit(handler)

    errors = _of_type(events, "error")
    assert errors == [{"type": "error", "message": "HTTP 400 - image too small", "fatal": True}]
    assert events[-1]["reason"] == "error"
    assert orchestrator.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_stopping_edit_stream_cancels_request():
    release = asyncio.Event()

    async def body():
        yield b"data: {\"b64_json\":\"AAAA\"}\n\n"
        await release.wait()
        yield b"data: {\"b64_json\":\"BBBB\"}\n\n"

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    events = []
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    orchestrator = ImagineStreamOrchestrator(events.append, http_client=client)
    await orchestrator.start_edit_stream(_edit_params())

    for _ in range(50):
        if _of_type(events, "images"):
            break
        await asyncio.sleep(0.01)
    await orchestrator.stop()
    release.set()
    await asyncio.sleep(0.01)
    await client.aclose()

    urls = [image["url"] for event in _of_type(events, "images") for image in event["images"]]
    assert urls == ["data:image/png;base64,AAAA"]
    assert events[-1] == {"type": "ended", "reason": "manual", "total": 1}


@pytest.mark.asyncio
async def test_stop_while_running_is_announced_opens_nothing():
    events = []
    admin = FakeAdmin()
    recorder = ConnectionRecorder()
    holder = {}

    async def emit(event):
        events.append(event)
        if event == {"type": "state", "state": "running", "transport": "ws"} and "stopped" not in holder:
            holder["stopped"] = True
            await holder["orchestrator"].stop()

    orchestrator = ImagineStreamOrchestrator(
        emit,
        admin_client_factory=lambda base: admin,
        connection_factory=recorder,
        fallback_delay=0.01,
    )
    holder["orchestrator"] = orchestrator

    session = await orchestrator.start(_params())
    await asyncio.sleep(0.05)

    assert session is None
    assert recorder.connections == []
    assert admin.stopped == [["task-1"]]
    assert orchestrator.state is SessionState.IDLE
    assert events[-1] == {"type": "ended", "reason": "manual", "total": 0}


@pytest.mark.asyncio
async def test_restart_while_running_is_announced_keeps_only_new_session():
    events = []
    admin = FakeAdmin()
    recorder = ConnectionRecorder()
    holder = {}

    async def emit(event):
        events.append(event)
        if event.get("state") == "running" and "restarted" not in holder:
            holder["restarted"] = True
            holder["session"] = await holder["orchestrator"].start(_params(transport="sse"))

    orchestrator = ImagineStreamOrchestrator(
        emit,
        admin_client_factory=lambda base: admin,
        connection_factory=recorder,
        fallback_delay=0.01,
    )
    holder["orchestrator"] = orchestrator

    first = await orchestrator.start(_params())
    await asyncio.sleep(0.05)

    assert first is None
    assert orchestrator.session is holder["session"]
    assert orchestrator.session.task_ids == ["task-2"]
    assert [conn.url for conn in recorder.connections] == [admin.sse_url("task-2")]
    assert admin.stopped == [["task-1"]]
    await orchestrator.aclose()


class BrokenCloseRecorder(ConnectionRecorder):
    def __call__(self, kind, url, **handlers):
        conn = super().__call__(kind, url, **handlers)
        if kind is TransportKind.WS:
            async def close():
                raise RuntimeError("socket already gone")

            conn.close = close
        return conn


@pytest.mark.asyncio
async def test_fallback_survives_stale_websocket_close_failure():
    events = []
    recorder = BrokenCloseRecorder()
    orchestrator = ImagineStreamOrchestrator(
        events.append,
        admin_client_factory=lambda base: FakeAdmin(),
        connection_factory=recorder,
        fallback_delay=0.01,
    )

    await orchestrator.start(_params(concurrency=2))
    await asyncio.sleep(0.05)

    assert len(recorder.of(TransportKind.SSE)) == 2
    assert _of_type(events, "status")[-1] == {
        "type": "status",
        "text": "WebSocket did not open in time; switched to SSE",
    }
    assert _of_type(events, "state")[-1] == {"type": "state", "state": "running", "transport": "sse"}
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_edit_stream_stopped_while_starting_sends_nothing():
    requests = []
    events = []
    holder = {}

    def handler(request):
        requests.append(request)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"data: [DONE]\n\n")

    async def emit(event):
        events.append(event)
        if event.get("state") == "starting" and "stopped" not in holder:
            holder["stopped"] = True
            await holder["orchestrator"].stop()

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    orchestrator = ImagineStreamOrchestrator(emit, http_client=client)
    holder["orchestrator"] = orchestrator

    session = await orchestrator.start_edit_stream(_edit_params())
    await asyncio.sleep(0.05)
    await client.aclose()

    assert session is None
    assert requests == []
    assert orchestrator.state is SessionState.IDLE
    assert events[-1] == {"type": "ended", "reason": "manual", "total": 0}


@pytest.mark.asyncio
async def test_superseded_edit_stream_never_posts():
    requests = []
    events = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"data: [DONE]\n\n")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    orchestrator = ImagineStreamOrchestrator(
        events.append,
        http_client=client,
        admin_client_factory=lambda base: FakeAdmin(),
        connection_factory=ConnectionRecorder(),
    )

    await orchestrator.start_edit_stream(_edit_params())
    await orchestrator.start(_params(transport="sse"))
    await asyncio.sleep(0.05)
    await client.aclose()

    assert requests == []
    assert orchestrator.session.kind == "tasks"
    await orchestrator.aclose()
