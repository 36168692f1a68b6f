"""HTTP + WebSocket server.

Routes:
    GET    /health
    GET    /ws                                  WebSocket (bearer token auth)
    GET    /api/v1/projects
    GET    /api/v1/projects/{project_id}/sessions
    GET    /api/v1/sessions
    POST   /api/v1/sessions                     {"projectId": ...}
    GET    /api/v1/sessions/{id}
    POST   /api/v1/sessions/{id}/resume
    POST   /api/v1/sessions/{id}/pause
    DELETE /api/v1/sessions/{id}
    GET    /api/v1/sessions/{id}/history        ?limit=&offset=&projectId=
    GET    /api/v1/stats

Besides serving requests, the server drains the engine's EventBus into
WebSocket broadcasts and runs a periodic cleanup sweep.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from endlesscode.adapters.event_bus import EventBus
from endlesscode.adapters.events import (
    CliOutput,
    PromptRequested,
    SessionEvent,
    SessionStateChanged,
)
from endlesscode.engine.config import ServerConfig
from endlesscode.engine.errors import (
    AuthenticationFailedError,
    ConnectionLimitExceededError,
    EndlessCodeError,
    InvalidMessageError,
    MissingParameterError,
)
from endlesscode.engine.history import DEFAULT_HISTORY_LIMIT
from endlesscode.engine.session_manager import SessionManager
from endlesscode.shared.models.message import message_to_dto

from .multiplexer import ConnectionMultiplexer
from .protocol import (
    CliOutputMessage,
    ErrorMessage,
    PromptRequestMessage,
    ServerMessage,
    SessionStateMessage,
    encode_server_message,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def _error_body(code: str, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "message": message}}


def _error_response(exc: EndlessCodeError) -> web.Response:
    return web.json_response(_error_body(exc.code, str(exc)), status=exc.http_status)


def _int_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidMessageError(f"{name} must be an integer") from None
    if value < 0:
        raise InvalidMessageError(f"{name} must be >= 0")
    return value


def extract_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.query.get("token") or None


def parse_cursors(values: list[str]) -> dict[str, int]:
    """``["sid:12", ...]`` -> ``{"sid": 12}``."""
    cursors: dict[str, int] = {}
    for value in values:
        session_id, sep, seq = value.rpartition(":")
        if not sep or not session_id:
            raise InvalidMessageError(f"bad resume cursor {value!r}")
        try:
            cursors[session_id] = int(seq)
        except ValueError:
            raise InvalidMessageError(f"bad resume cursor {value!r}") from None
    return cursors


def event_to_messages(event: SessionEvent) -> list[ServerMessage]:
    """Wire frames for one engine event, in send order; empty if none."""
    if isinstance(event, CliOutput) and event.message is not None:
        return [CliOutputMessage(session_id=event.session_id, message=event.message)]
    if isinstance(event, SessionStateChanged):
        messages: list[ServerMessage] = [
            SessionStateMessage(
                session_id=event.session_id, state=event.state, error=event.error
            )
        ]
        if event.error_code:
            messages.append(ErrorMessage(
                code=event.error_code,
                message=event.error or event.error_code,
                session_id=event.session_id,
            ))
        return messages
    if isinstance(event, PromptRequested) and event.question is not None:
        return [PromptRequestMessage(
            session_id=event.session_id,
            prompt_id=event.prompt_id,
            question=event.question,
            timeout=int(event.timeout_seconds),
        )]
    return []


class EndlessCodeServer:
    """aiohttp application wired to a SessionManager and multiplexer."""

    def __init__(
        self,
        config: ServerConfig,
        sessions: SessionManager | None = None,
    ) -> None:
        self._config = config
        self._host = config.host
        self._port = config.port
        if sessions is None:
            sessions = SessionManager.create_default(config, EventBus())
        self.sessions = sessions
        self.event_bus = sessions.event_bus
        self.multiplexer = ConnectionMultiplexer(config, sessions)
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._background: list[asyncio.Task] = []
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware]
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except EndlessCodeError as exc:
            return _error_response(exc)
        except web.HTTPException:
            raise
        except Exception:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return web.json_response(
                _error_body("INTERNAL_ERROR", "Internal server error"), status=500
            )

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_websocket)
        r.add_get(f"{API_PREFIX}/projects", self._handle_list_projects)
        r.add_get(f"{API_PREFIX}/projects/{{project_id}}/sessions", self._handle_list_project_sessions)
        r.add_get(f"{API_PREFIX}/sessions", self._handle_list_sessions)
        r.add_post(f"{API_PREFIX}/sessions", self._handle_create_session)
        r.add_get(f"{API_PREFIX}/sessions/{{id}}", self._handle_get_session)
        r.add_post(f"{API_PREFIX}/sessions/{{id}}/resume", self._handle_resume_session)
        r.add_post(f"{API_PREFIX}/sessions/{{id}}/pause", self._handle_pause_session)
        r.add_delete(f"{API_PREFIX}/sessions/{{id}}", self._handle_delete_session)
        r.add_get(f"{API_PREFIX}/sessions/{{id}}/history", self._handle_session_history)
        r.add_get(f"{API_PREFIX}/stats", self._handle_stats)

    # ── Lifecycle ──

    def start_background_tasks(self) -> None:
        self._background = [
            asyncio.create_task(self._forward_events(), name="event-forwarder"),
            asyncio.create_task(self._cleanup_loop(), name="cleanup-loop"),
        ]

    async def start(self) -> None:
        """Start serving and block until cancelled."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info(
            "EndlessCode server listening on %s:%d (auth=%s, max_sessions=%d)",
            self._host, self._port,
            "on" if self._config.auth_token else "off",
            self._config.max_concurrent_sessions,
        )
        self.start_background_tasks()
        try:
            await asyncio.Event().wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down EndlessCode server")
        for task in self._background:
            task.cancel()
        if self._background:
            await asyncio.wait(self._background)
        self._background = []
        await self.multiplexer.close_all()
        await self.sessions.terminate_all_sessions()
        self.event_bus.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _forward_events(self) -> None:
        async for event in self.event_bus.consume():
            messages = event_to_messages(event)
            if not messages:
                logger.debug("No wire form for event %s", event.event_type)
                continue
            try:
                for message in messages:
                    await self.multiplexer.broadcast(message, event.session_id)
            except Exception:
                logger.exception(
                    "Broadcast of %s for session %s failed",
                    event.event_type, event.session_id,
                )

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_seconds)
            try:
                await self.run_cleanup()
            except Exception:
                logger.exception("Cleanup sweep failed")

    async def run_cleanup(self) -> None:
        """One sweep: idle sessions, expired prompts, stale connections."""
        sweep = await self.sessions.cleanup_idle_sessions(
            self._config.session_timeout_seconds
        )
        for session_id in sweep.removed:
            self.multiplexer.forget_session(session_id)
            self.event_bus.forget_session(session_id)
        for prompt in self.sessions.prompts.cleanup_expired_prompts():
            await self.multiplexer.broadcast(
                ErrorMessage(
                    code="CLI_TIMEOUT",
                    message=f"Prompt {prompt.id} timed out",
                    session_id=prompt.session_id,
                ),
                prompt.session_id,
            )
        await self.multiplexer.check_stale_connections(
            self._config.stale_connection_timeout_seconds
        )

    # ── WebSocket ──

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        token = extract_token(request)
        try:
            self.multiplexer.authenticate(token)
            cursors = parse_cursors(request.query.getall("resume", []))
        except EndlessCodeError as exc:
            logger.warning("WebSocket rejected from %s: %s", request.remote, exc)
            return _error_response(exc)

        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)
        connection_id = str(uuid.uuid4())

        async def send(payload: str) -> None:
            await ws.send_str(payload)

        async def close() -> None:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"stale connection")

        try:
            await self.multiplexer.handle_connection(
                connection_id, token, send, close, cursors or None
            )
        except (AuthenticationFailedError, ConnectionLimitExceededError) as exc:
            await ws.send_str(encode_server_message(ErrorMessage(code=exc.code, message=str(exc))))
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=exc.code.encode())
            return ws

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.multiplexer.handle_raw_message(connection_id, msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                    self.multiplexer.handle_ping(connection_id)
                elif msg.type == WSMsgType.PONG:
                    self.multiplexer.handle_ping(connection_id)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket %s error: %s", connection_id, ws.exception()
                    )
                    break
        finally:
            await self.multiplexer.handle_disconnection(connection_id)
        return ws

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "connections": self.multiplexer.connection_count,
            "running_sessions": self.sessions.supervisor.active_session_count,
        })

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = await self.sessions.list_projects()
        return web.json_response({
            "projects": [
                {"id": p.id, "name": p.name, "path": p.path, "validated": p.validated}
                for p in projects
            ]
        })

    async def _handle_list_project_sessions(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        sessions = self.sessions.list_sessions(project_id)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self.sessions.all_sessions()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            raise InvalidMessageError("request body is not valid JSON") from None
        project_id = body.get("projectId") if isinstance(body, dict) else None
        if not project_id:
            raise MissingParameterError("projectId")
        session = await self.sessions.create_session(project_id)
        return web.json_response({"session": session.to_dict()}, status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self.sessions.get_session(request.match_info["id"])
        return web.json_response({"session": session.to_dict()})

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        session = await self.sessions.resume_session(request.match_info["id"])
        return web.json_response({"session": session.to_dict()})

    async def _handle_pause_session(self, request: web.Request) -> web.Response:
        session = await self.sessions.pause_session(request.match_info["id"])
        return web.json_response({"session": session.to_dict()})

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        await self.sessions.delete_session(session_id)
        self.multiplexer.forget_session(session_id)
        self.event_bus.forget_session(session_id)
        return web.json_response({"status": "deleted", "sessionId": session_id})

    async def _handle_session_history(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        limit = _int_query(request, "limit", DEFAULT_HISTORY_LIMIT)
        offset = _int_query(request, "offset", 0)
        history = await self.sessions.get_session_history(
            session_id,
            limit=limit,
            offset=offset,
            project_id=request.query.get("projectId") or None,
        )
        return web.json_response({
            "sessionId": session_id,
            "messages": [message_to_dto(m) for m in history.messages],
            "totalLines": history.total_lines,
            "corruptedLines": history.corrupted_lines,
            "offset": history.offset,
            "hasMore": history.has_more,
        })

    async def _handle_stats(self, request: web.Request) -> web.Response:
        stats = self.sessions.stats()
        stats["connections"] = self.multiplexer.connection_count
        stats["subscribedSessions"] = len(self.multiplexer.active_session_ids)
        return web.json_response(stats)
