"""Tests for the aiohttp server surface.

Covers:
- REST session routes (create / get / pause / resume / delete / history)
- Error middleware mapping of EndlessCodeError to JSON bodies
- Query parsing helpers (bearer token, resume cursors)
- Event -> wire message translation and the event forwarder
- Cleanup sweep reporting expired prompts and freeing swept sessions
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from endlesscode.adapters.event_bus import EventBus
from endlesscode.adapters.events import (
    CliOutput,
    PromptRequested,
    PromptStateChanged,
    SessionStateChanged,
)
from endlesscode.engine.config import RetryPolicy, ServerConfig
from endlesscode.engine.errors import InvalidMessageError
from endlesscode.engine.history import HistoryTailer
from endlesscode.engine.process_runner import (
    OutputChannel,
    OverflowPolicy,
    ProcessState,
    ProcessStatus,
)
from endlesscode.engine.projects import ProjectInfo, ProjectLookup
from endlesscode.engine.prompts import PromptCoordinator
from endlesscode.engine.session_manager import SessionManager
from endlesscode.engine.supervisor import ProcessSupervisor
from endlesscode.server.protocol import (
    CliOutputMessage,
    ErrorMessage,
    PromptRequestMessage,
    SessionStateMessage,
)
from endlesscode.server.server import (
    EndlessCodeServer,
    event_to_messages,
    extract_token,
    parse_cursors,
)
from endlesscode.shared.models.message import (
    AskUserQuestion,
    ChatMessage,
    MessageRole,
    QuestionOption,
)

PROJECT_ID = "-work-demo"


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: dict | None = None
    method: str = "GET"
    path: str = "/"

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self) -> dict:
        return self.body or {}


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


class _Runner:
    def __init__(self) -> None:
        self.stdout = OutputChannel("stdout", 100)
        self.stderr = OutputChannel("stderr", 100, OverflowPolicy.DROP_OLDEST)
        self.state = ProcessState(ProcessStatus.IDLE)
        self.pid = None
        self.written: list[str] = []

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    async def start(self) -> None:
        self.state = ProcessState(ProcessStatus.RUNNING)
        self.pid = 4242

    async def write_line(self, text: str) -> None:
        self.written.append(text)

    async def terminate(self) -> None:
        self.state = ProcessState(ProcessStatus.TERMINATED, exit_code=-15)
        self.stdout.close()
        self.stderr.close()


class _Projects(ProjectLookup):
    def __init__(self, path: str) -> None:
        self.path = path

    async def project_info(self, project_id: str) -> ProjectInfo | None:
        if project_id != PROJECT_ID:
            return None
        return ProjectInfo(id=project_id, path=self.path, validated=True)

    async def list_projects(self) -> list[ProjectInfo]:
        return [ProjectInfo(id=PROJECT_ID, path=self.path, validated=True)]


class _Socket:
    def __init__(self) -> None:
        self.frames: list[dict] = []

    async def send(self, payload: str) -> None:
        self.frames.append(json.loads(payload))


def _build_server(
    tmp_path: Path, prompt_timeout: float = 60, session_timeout: float = 900.0
) -> EndlessCodeServer:
    config = ServerConfig(
        claude_base_path=str(tmp_path / "claude"),
        session_timeout_seconds=session_timeout,
        restart_policy=RetryPolicy(max_retries=1, initial_delay=0.0, max_delay=0.0),
    )
    supervisor = ProcessSupervisor(
        config, runner_factory=lambda cli, path, sid, resume: _Runner()
    )
    manager = SessionManager(
        config=config,
        projects=_Projects(str(tmp_path)),
        supervisor=supervisor,
        prompts=PromptCoordinator(prompt_timeout),
        history=HistoryTailer(config.claude_base_path),
        event_bus=EventBus(),
    )
    return EndlessCodeServer(config, sessions=manager)


def _question() -> AskUserQuestion:
    return AskUserQuestion(
        tool_use_id="ask-1",
        question="Continue?",
        options=(QuestionOption("Yes"), QuestionOption("No")),
    )


# ── Helpers ──


def test_extract_token_prefers_bearer_header() -> None:
    req = _Request(headers={"Authorization": "Bearer abc"}, query={"token": "q"})
    assert extract_token(req) == "abc"
    assert extract_token(_Request(query={"token": "q"})) == "q"
    assert extract_token(_Request(headers={"Authorization": "Basic xyz"})) is None


def test_parse_cursors() -> None:
    assert parse_cursors(["s1:4", "a:b:9"]) == {"s1": 4, "a:b": 9}
    assert parse_cursors([]) == {}
    for bad in (["nocolon"], [":3"], ["s1:x"]):
        with pytest.raises(InvalidMessageError):
            parse_cursors(bad)


def test_event_to_messages() -> None:
    chat = ChatMessage(role=MessageRole.ASSISTANT, content="hi")
    [output] = event_to_messages(CliOutput(session_id="s1", message=chat))
    assert output == CliOutputMessage(session_id="s1", message=chat, timestamp=output.timestamp)

    [state] = event_to_messages(
        SessionStateChanged(session_id="s1", state="terminated", error="boom")
    )
    assert isinstance(state, SessionStateMessage)
    assert (state.state, state.error) == ("terminated", "boom")

    [prompt] = event_to_messages(PromptRequested(
        session_id="s1", prompt_id="p1", question=_question(), timeout_seconds=1800.0
    ))
    assert isinstance(prompt, PromptRequestMessage)
    assert prompt.timeout == 1800

    assert event_to_messages(PromptStateChanged(session_id="s1", prompt_id="p1")) == []


def test_crash_state_carries_error_code() -> None:
    state, error = event_to_messages(SessionStateChanged(
        session_id="s1",
        state="terminated",
        error="Session s1 exceeded max restarts (3)",
        error_code="CLI_CRASHED",
    ))
    assert isinstance(state, SessionStateMessage)
    assert state.state == "terminated"
    assert error == ErrorMessage(
        code="CLI_CRASHED",
        message="Session s1 exceeded max restarts (3)",
        session_id="s1",
    )


# ── REST routes ──


@pytest.mark.asyncio
async def test_health_and_projects(tmp_path: Path) -> None:
    server = _build_server(tmp_path)
    health = _json_payload(await server._handle_health(_Request()))
    assert health["status"] == "ok"
    assert health["connections"] == 0
    assert health["running_sessions"] == 0

    projects = _json_payload(await server._handle_list_projects(_Request()))
    assert projects["projects"] == [
        {"id": PROJECT_ID, "name": Path(str(tmp_path)).name, "path": str(tmp_path), "validated": True}
    ]


@pytest.mark.asyncio
async def test_session_lifecycle_routes(tmp_path: Path) -> None:
    server = _build_server(tmp_path)

    created = await server._handle_create_session(_Request(body={"projectId": PROJECT_ID}))
    assert created.status == 201
    session = _json_payload(created)["session"]
    assert session["projectId"] == PROJECT_ID
    assert session["state"] == "active"
    req = _Request(match_info={"id": session["id"]})

    fetched = _json_payload(await server._handle_get_session(req))
    assert fetched["session"]["id"] == session["id"]

    listed = _json_payload(await server._handle_list_sessions(_Request()))
    assert [s["id"] for s in listed["sessions"]] == [session["id"]]
    per_project = _json_payload(await server._handle_list_project_sessions(
        _Request(match_info={"project_id": PROJECT_ID})
    ))
    assert len(per_project["sessions"]) == 1

    paused = _json_payload(await server._handle_pause_session(req))
    assert paused["session"]["state"] == "paused"
    resumed = _json_payload(await server._handle_resume_session(req))
    assert resumed["session"]["state"] == "active"

    stats = _json_payload(await server._handle_stats(_Request()))
    assert stats["runningProcesses"] == 1
    assert stats["connections"] == 0
    assert stats["droppedEvents"] == 0

    deleted = _json_payload(await server._handle_delete_session(req))
    assert deleted == {"status": "deleted", "sessionId": session["id"]}
    assert server.sessions.all_sessions() == []


@pytest.mark.asyncio
async def test_history_route(tmp_path: Path) -> None:
    server = _build_server(tmp_path)
    session = await server.sessions.create_session(PROJECT_ID)
    log = server.sessions.history.session_file_path(PROJECT_ID, session.id)
    log.parent.mkdir(parents=True)
    log.write_text(
        json.dumps({"type": "message", "role": "user", "content": "one"}) + "\n"
        + "corrupt\n"
        + json.dumps({"type": "message", "role": "assistant", "content": "two"}) + "\n"
    )

    resp = await server._handle_session_history(
        _Request(match_info={"id": session.id}, query={"limit": "1"})
    )
    payload = _json_payload(resp)
    assert payload["sessionId"] == session.id
    assert [m["chat"]["content"] for m in payload["messages"]] == ["one"]
    assert payload["totalLines"] == 3
    assert payload["hasMore"] is True


# ── Error mapping ──


@pytest.mark.asyncio
async def test_error_middleware_maps_domain_errors(tmp_path: Path) -> None:
    server = _build_server(tmp_path)

    missing = await server._error_middleware(
        _Request(match_info={"id": "nope"}), server._handle_get_session
    )
    assert missing.status == 404
    assert _json_payload(missing)["error"]["code"] == "SESSION_NOT_FOUND"

    no_project = await server._error_middleware(
        _Request(body={}), server._handle_create_session
    )
    assert no_project.status == 400
    assert _json_payload(no_project)["error"]["code"] == "INVALID_MESSAGE"

    unknown_project = await server._error_middleware(
        _Request(body={"projectId": "elsewhere"}), server._handle_create_session
    )
    assert unknown_project.status == 404
    assert _json_payload(unknown_project)["error"]["code"] == "PROJECT_NOT_FOUND"

    bad_limit = await server._error_middleware(
        _Request(match_info={"id": "s"}, query={"limit": "-1"}),
        server._handle_session_history,
    )
    assert bad_limit.status == 400

    async def _broken(request):
        raise RuntimeError("secret detail")

    internal = await server._error_middleware(_Request(), _broken)
    assert internal.status == 500
    assert _json_payload(internal) == {
        "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    }


# ── Background work ──


@pytest.mark.asyncio
async def test_forward_events_broadcasts_to_subscribers(tmp_path: Path) -> None:
    server = _build_server(tmp_path)
    socket = _Socket()
    await server.multiplexer.handle_connection("c1", None, socket.send)
    server.multiplexer.subscribe("c1", "s1")

    task = asyncio.create_task(server._forward_events())
    try:
        await server.event_bus.emit(CliOutput(
            session_id="s1", message=ChatMessage(role=MessageRole.ASSISTANT, content="hey")
        ))
        for _ in range(100):
            if len(socket.frames) > 1:
                break
            await asyncio.sleep(0.01)
    finally:
        server.event_bus.close()
        await asyncio.wait_for(task, 2.0)

    frame = socket.frames[-1]
    assert frame["type"] == "cli_output"
    assert frame["seq"] == 1
    assert frame["message"]["chat"]["content"] == "hey"


@pytest.mark.asyncio
async def test_forwarded_crash_reaches_client_with_code(tmp_path: Path) -> None:
    server = _build_server(tmp_path)
    socket = _Socket()
    await server.multiplexer.handle_connection("c1", None, socket.send)
    server.multiplexer.subscribe("c1", "s1")

    task = asyncio.create_task(server._forward_events())
    try:
        await server.event_bus.emit(SessionStateChanged(
            session_id="s1",
            state="terminated",
            error="Session s1 exceeded max restarts (1)",
            error_code="CLI_CRASHED",
        ))
        for _ in range(100):
            if any(f["type"] == "error" for f in socket.frames):
                break
            await asyncio.sleep(0.01)
    finally:
        server.event_bus.close()
        await asyncio.wait_for(task, 2.0)

    state, error = socket.frames[-2:]
    assert state["type"] == "session_state"
    assert state["state"] == "terminated"
    assert error["type"] == "error"
    assert error["code"] == "CLI_CRASHED"
    assert error["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_run_cleanup_reports_expired_prompts(tmp_path: Path) -> None:
    server = _build_server(tmp_path, prompt_timeout=0.01)
    socket = _Socket()
    await server.multiplexer.handle_connection("c1", None, socket.send)
    server.multiplexer.subscribe("c1", "s1")

    server.sessions.prompts.register_prompt("s1", _question())
    await asyncio.sleep(0.05)

    await server.run_cleanup()
    errors = [f for f in socket.frames if f["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["code"] == "CLI_TIMEOUT"
    assert errors[0]["sessionId"] == "s1"
    assert server.multiplexer.replay_buffer("s1") == []

    await server.run_cleanup()
    assert len([f for f in socket.frames if f["type"] == "error"]) == 1


@pytest.mark.asyncio
async def test_run_cleanup_frees_buffers_of_swept_sessions(tmp_path: Path) -> None:
    server = _build_server(tmp_path, session_timeout=0.01)
    socket = _Socket()
    await server.multiplexer.handle_connection("c1", None, socket.send)
    session = await server.sessions.create_session(PROJECT_ID)
    server.multiplexer.subscribe("c1", session.id)
    await server.multiplexer.broadcast(
        SessionStateMessage(session_id=session.id, state="active"), session.id
    )
    assert server.multiplexer.latest_seq(session.id) == 1

    # First sweep stops the idle process; the entry stays visible.
    await asyncio.sleep(0.05)
    await server.run_cleanup()
    assert server.sessions.get_session(session.id).state.value == "terminated"
    assert server.multiplexer.latest_seq(session.id) == 1

    # Second sweep drops the entry and everything buffered for it.
    await asyncio.sleep(0.05)
    await server.run_cleanup()
    assert server.sessions.all_sessions() == []
    assert server.multiplexer.replay_buffer(session.id) == []
    assert server.multiplexer.latest_seq(session.id) == 0
    assert server.multiplexer.subscribers(session.id) == set()
    assert server.multiplexer.subscriptions("c1") == set()
