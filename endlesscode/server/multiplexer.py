"""WebSocket connection multiplexer.

Maps connections to the sessions they subscribe to (both directions are
kept in sync), fans session output out to subscribers, and keeps a
bounded per-session replay buffer so a reconnecting client can pick up
from the last ``seq`` it saw.

The transport is abstracted as two callables per connection (``send`` a
text frame, ``close`` the socket) so the server and tests can plug in
their own sockets.
"""
from __future__ import annotations

import asyncio
import hmac
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from endlesscode.engine.config import RetryPolicy, ServerConfig
from endlesscode.engine.errors import (
    AuthenticationFailedError,
    ConnectionLimitExceededError,
    ConnectionNotFoundError,
    EndlessCodeError,
    InvalidMessageError,
    MissingParameterError,
)

from .protocol import (
    SESSION_SCOPED,
    ClientMessage,
    CliOutputMessage,
    ErrorMessage,
    Ping,
    Pong,
    PromptResponse,
    ServerMessage,
    SessionAction,
    SessionControl,
    SessionStateMessage,
    SyncMessage,
    UserMessage,
    decode_client_message,
    encode_server_message,
    server_message_to_dict,
)

if TYPE_CHECKING:
    from endlesscode.engine.session_manager import SessionManager

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]
CloseFn = Callable[[], Awaitable[None]]

DEFAULT_REPLAY_CAPACITY = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Connection:
    id: str
    send: SendFn = field(repr=False)
    close: CloseFn | None = field(default=None, repr=False)
    connected_at: datetime = field(default_factory=_utcnow)
    last_ping_at: datetime = field(default_factory=_utcnow)
    subscribed_session_ids: set[str] = field(default_factory=set)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(frozen=True)
class BufferedMessage:
    seq: int
    message: ServerMessage


class ConnectionMultiplexer:
    def __init__(
        self,
        config: ServerConfig,
        sessions: SessionManager,
        replay_capacity: int | None = None,
        send_policy: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._replay_capacity = replay_capacity or config.replay_buffer_size
        self._send_policy = send_policy or config.connection_send_policy
        self._connections: dict[str, Connection] = {}
        self._subscribers: dict[str, set[str]] = {}
        self._buffers: dict[str, deque[BufferedMessage]] = {}
        self._seq: dict[str, int] = {}

    # ── Queries ──

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def active_session_ids(self) -> list[str]:
        return sorted(self._subscribers)

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def subscribers(self, session_id: str) -> set[str]:
        return set(self._subscribers.get(session_id, ()))

    def subscriptions(self, connection_id: str) -> set[str]:
        connection = self._connections.get(connection_id)
        return set(connection.subscribed_session_ids) if connection else set()

    def replay_buffer(self, session_id: str) -> list[BufferedMessage]:
        return list(self._buffers.get(session_id, ()))

    def latest_seq(self, session_id: str) -> int:
        return self._seq.get(session_id, 0)

    # ── Connection lifecycle ──

    def authenticate(self, token: str | None) -> None:
        expected = self._config.auth_token
        if not expected:
            return
        if token is None or not hmac.compare_digest(
            token.encode("utf-8"), expected.encode("utf-8")
        ):
            raise AuthenticationFailedError()

    async def handle_connection(
        self,
        connection_id: str,
        token: str | None,
        send: SendFn,
        close: CloseFn | None = None,
        cursors: Mapping[str, int] | None = None,
    ) -> Connection:
        """Register a socket and send it the initial state.

        With *cursors* (session_id -> last seen seq) the connection is
        treated as a reconnect and buffered messages are replayed.
        """
        self.authenticate(token)
        if len(self._connections) >= self._config.max_websocket_connections:
            raise ConnectionLimitExceededError(self._config.max_websocket_connections)
        if connection_id in self._connections:
            await self.handle_disconnection(connection_id)

        connection = Connection(id=connection_id, send=send, close=close)
        self._connections[connection_id] = connection
        logger.info(
            "WebSocket connection %s registered (%d/%d)",
            connection_id, len(self._connections),
            self._config.max_websocket_connections,
        )
        if cursors:
            await self.handle_reconnection(connection_id, cursors)
        else:
            await self._send_sync(connection_id)
        return connection

    async def handle_disconnection(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        for session_id in connection.subscribed_session_ids:
            subscribers = self._subscribers.get(session_id)
            if subscribers is not None:
                subscribers.discard(connection_id)
                if not subscribers:
                    del self._subscribers[session_id]
        logger.info("WebSocket connection %s removed", connection_id)

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            await self._close(connection_id)

    def subscribe(self, connection_id: str, session_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        connection.subscribed_session_ids.add(session_id)
        self._subscribers.setdefault(session_id, set()).add(connection_id)

    def unsubscribe(self, connection_id: str, session_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.subscribed_session_ids.discard(session_id)
        subscribers = self._subscribers.get(session_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._subscribers[session_id]

    def forget_session(self, session_id: str) -> None:
        """Drop subscriptions and buffered output of a deleted session."""
        for connection_id in self._subscribers.pop(session_id, set()):
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.subscribed_session_ids.discard(session_id)
        self._buffers.pop(session_id, None)
        self._seq.pop(session_id, None)

    # ── Inbound ──

    async def handle_raw_message(self, connection_id: str, raw: str | bytes) -> None:
        """Decode and dispatch one frame. Problems are reported as error frames."""
        if connection_id not in self._connections:
            return
        try:
            message = decode_client_message(raw)
        except InvalidMessageError as exc:
            await self._send_error(connection_id, exc.code, str(exc))
            return
        await self._dispatch(connection_id, message)

    async def handle_message(self, connection_id: str, message: ClientMessage) -> None:
        if connection_id not in self._connections:
            raise ConnectionNotFoundError(connection_id)
        await self._dispatch(connection_id, message)

    async def _dispatch(self, connection_id: str, message: ClientMessage) -> None:
        session_id = getattr(message, "session_id", None)
        try:
            if isinstance(message, UserMessage):
                await self._sessions.send_message(message.session_id, message.content)
                self.subscribe(connection_id, message.session_id)
            elif isinstance(message, PromptResponse):
                await self._sessions.respond_to_prompt(
                    message.session_id,
                    message.prompt_id,
                    message.selected_options,
                    message.custom_input,
                )
                self.subscribe(connection_id, message.session_id)
            elif isinstance(message, SessionControl):
                await self._handle_session_control(connection_id, message)
            elif isinstance(message, Ping):
                self.handle_ping(connection_id)
                await self._send(connection_id, Pong())
        except EndlessCodeError as exc:
            logger.info(
                "Connection %s: %s failed: %s", connection_id,
                type(message).__name__, exc,
            )
            await self._send_error(connection_id, exc.code, str(exc), session_id)
        except Exception:
            logger.exception(
                "Connection %s: unexpected error handling %s",
                connection_id, type(message).__name__,
            )
            await self._send_error(
                connection_id, "INTERNAL_ERROR", "Internal server error", session_id
            )

    async def _handle_session_control(
        self, connection_id: str, control: SessionControl
    ) -> None:
        if control.action is SessionAction.START:
            if not control.project_id:
                raise MissingParameterError("projectId")
            session = await self._sessions.create_session(control.project_id)
        else:
            if not control.session_id:
                raise MissingParameterError("sessionId")
            if control.action is SessionAction.PAUSE:
                session = await self._sessions.pause_session(control.session_id)
            elif control.action is SessionAction.RESUME:
                session = await self._sessions.resume_session(control.session_id)
            else:
                session = await self._sessions.terminate_session(control.session_id)
        self.subscribe(connection_id, session.id)
        await self._send(
            connection_id,
            SessionStateMessage(session_id=session.id, state=session.state.value),
        )

    def handle_ping(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_ping_at = _utcnow()

    # ── Outbound ──

    async def broadcast(self, message: ServerMessage, session_id: str) -> int:
        """Buffer *message* for replay and send it to the session's subscribers.

        Returns the number of connections it was delivered to.
        """
        if isinstance(message, SESSION_SCOPED):
            seq = self._seq.get(session_id, 0) + 1
            self._seq[session_id] = seq
            message = replace(message, seq=seq)
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = deque(maxlen=self._replay_capacity)
                self._buffers[session_id] = buffer
            buffer.append(BufferedMessage(seq=seq, message=message))

        subscribers = list(self._subscribers.get(session_id, ()))
        if not subscribers:
            return 0
        payload = encode_server_message(message)
        results = await asyncio.gather(
            *(self._deliver(cid, payload) for cid in subscribers)
        )
        return sum(results)

    async def broadcast_to_all(self, message: ServerMessage) -> int:
        payload = encode_server_message(message)
        results = await asyncio.gather(
            *(self._deliver(cid, payload) for cid in list(self._connections))
        )
        return sum(results)

    async def _send(self, connection_id: str, message: ServerMessage) -> bool:
        return await self._deliver(connection_id, encode_server_message(message))

    async def _send_error(
        self,
        connection_id: str,
        code: str,
        message: str,
        session_id: str | None = None,
    ) -> None:
        await self._send(
            connection_id,
            ErrorMessage(code=code, message=message, session_id=session_id),
        )

    async def _deliver(self, connection_id: str, payload: str) -> bool:
        """Send with retry; a connection that keeps failing is dropped."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        policy = self._send_policy
        attempts = max(1, policy.max_retries)
        async with connection.send_lock:
            for attempt in range(attempts):
                try:
                    await connection.send(payload)
                    return True
                except (OSError, RuntimeError) as exc:
                    if attempt + 1 >= attempts:
                        logger.warning(
                            "Connection %s: send failed after %d attempt(s): %s",
                            connection_id, attempts, exc,
                        )
                        break
                    await asyncio.sleep(policy.delay(attempt))
        await self._close(connection_id)
        return False

    async def _close(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        await self.handle_disconnection(connection_id)
        if connection.close is not None:
            try:
                await connection.close()
            except (OSError, RuntimeError) as exc:
                logger.debug("Connection %s: close failed: %s", connection_id, exc)

    # ── Sync / reconnect ──

    async def _send_sync(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        recent = [
            server_message_to_dict(buffered.message)
            for session_id in sorted(connection.subscribed_session_ids)
            for buffered in self._buffers.get(session_id, ())
            if isinstance(buffered.message, CliOutputMessage)
        ]
        await self._send(connection_id, SyncMessage(
            sessions=self._sessions.all_sessions(),
            recent_messages=recent,
            cursors=dict(self._seq),
        ))

    async def handle_reconnection(
        self, connection_id: str, cursors: Mapping[str, int]
    ) -> bool:
        """Replay what the client missed, or fall back to a full sync.

        Re-subscribes the connection to every session in *cursors*.
        Returns True when buffered messages were replayed, False when a
        full sync was sent because some cursor fell outside the buffer.
        """
        if connection_id not in self._connections:
            raise ConnectionNotFoundError(connection_id)

        replay: list[BufferedMessage] = []
        needs_sync = False
        for session_id, last_seq in cursors.items():
            self.subscribe(connection_id, session_id)
            latest = self._seq.get(session_id, 0)
            if last_seq == latest:
                continue
            buffer = self._buffers.get(session_id) or ()
            oldest = buffer[0].seq if buffer else latest + 1
            if last_seq > latest or last_seq + 1 < oldest:
                needs_sync = True
                continue
            replay.extend(b for b in buffer if b.seq > last_seq)

        if needs_sync:
            logger.info(
                "Connection %s: cursor outside replay buffer, sending full sync",
                connection_id,
            )
            await self._send_sync(connection_id)
            return False

        logger.info(
            "Connection %s: replaying %d buffered message(s)", connection_id, len(replay)
        )
        for buffered in replay:
            if not await self._send(connection_id, buffered.message):
                break
        return True

    async def check_stale_connections(self, timeout_seconds: float) -> list[str]:
        """Close every connection whose last ping is *timeout_seconds* old or older."""
        cutoff = _utcnow() - timedelta(seconds=timeout_seconds)
        stale = [
            cid for cid, connection in self._connections.items()
            if connection.last_ping_at <= cutoff
        ]
        for connection_id in stale:
            logger.info("Closing stale connection %s", connection_id)
            await self._close(connection_id)
        return stale
