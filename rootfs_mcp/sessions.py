"""
Session registry - binds each MCP client to an isolated handler context.

Provides:
- Unguessable session tokens
- Create-on-initialize routing (tokenless create-on-stream-open is configurable)
- Idempotent close and administrative bulk clear
- Idle expiry for an external reaper
- Lifecycle events so the transport layer can follow sessions
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import secrets
import time
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# JSON-RPC server error code returned for requests that arrive with no session
PROTOCOL_ORDERING_CODE = -32000


class ProtocolOrderingError(Exception):
    """A non-initialization request arrived without a valid session."""

    code = PROTOCOL_ORDERING_CODE

    def __init__(
        self,
        message: str = "Bad Request: no valid session. Send initialize first.",
        session_id: str | None = None,
    ):
        super().__init__(message)
        self.session_id = session_id


class SessionBinding(Protocol):
    """Transport side of a session: where its requests go and how it is released."""

    async def handle_request(self, scope: Any, receive: Any, send: Any) -> None: ...

    async def close(self) -> None: ...


# Given a fresh session id, start its binding and return (binding, per-session server)
SessionFactory = Callable[[str], Awaitable[tuple[SessionBinding, Any]]]


@dataclass
class SessionContext:
    """Everything the registry owns for one client."""

    session_id: str
    binding: SessionBinding
    server: Any
    origin: str  # "initialize" | "stream"
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    request_count: int = 0

    def touch(self) -> None:
        self.last_seen = time.time()
        self.request_count += 1

    def info(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "origin": self.origin,
            "created_at": self.created_at,
            "last_seen": self.last_seen,
            "requests": self.request_count,
        }


@dataclass(frozen=True)
class SessionEvent:
    """Lifecycle notification emitted to registry listeners."""

    kind: str  # "created" | "closed"
    session_id: str
    reason: str


class SessionRegistry:
    """
    Single owner of the token -> SessionContext map.

    Every lookup-and-create, close and clear runs under one asyncio lock so
    two concurrent requests can never both mint a session or lose an update.
    Closing a token removes it for good: a closed token is indistinguishable
    from one that was never issued.

    Example:
        registry = SessionRegistry(factory)
        ctx = await registry.route(None, initialize=True)   # creates
        ctx = await registry.route(ctx.session_id, initialize=False)
        await registry.close(ctx.session_id)
    """

    def __init__(
        self,
        factory: SessionFactory,
        *,
        create_on_stream_open: bool = True,
        token_factory: Callable[[], str] | None = None,
    ):
        self._factory = factory
        self._sessions: dict[str, SessionContext] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self._new_token = token_factory or (lambda: secrets.token_hex(16))
        self.create_on_stream_open = create_on_stream_open

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str | None) -> SessionContext | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def snapshot(self) -> list[dict[str, Any]]:
        return [ctx.info() for ctx in self._sessions.values()]

    def add_listener(self, callback: Callable[[SessionEvent], None]) -> None:
        self._listeners.append(callback)

    def _emit(self, event: SessionEvent) -> None:
        for callback in self._listeners:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Session listener failed on {event.kind} {event.session_id}")

    async def _create_locked(self, origin: str) -> SessionContext:
        """Mint a session. Caller must hold the lock."""
        session_id = self._new_token()
        while session_id in self._sessions:
            session_id = self._new_token()

        binding, server = await self._factory(session_id)
        ctx = SessionContext(session_id=session_id, binding=binding, server=server, origin=origin)
        self._sessions[session_id] = ctx

        logger.info(f"Session created {session_id} ({origin}, total={len(self._sessions)})")
        self._emit(SessionEvent("created", session_id, origin))
        return ctx

    async def route(self, session_id: str | None, *, initialize: bool) -> SessionContext:
        """
        Find the context for a request, creating one for initialize requests.

        Args:
            session_id: Token presented by the client (None if absent)
            initialize: Whether the request is a session-initialization request

        Returns:
            The session's context

        Raises:
            ProtocolOrderingError: Unknown or absent token on a non-initialize request
        """
        async with self._lock:
            ctx = self._sessions.get(session_id) if session_id else None
            if ctx is None:
                if not initialize:
                    raise ProtocolOrderingError(session_id=session_id)
                ctx = await self._create_locked("initialize")
            ctx.touch()
            return ctx

    async def open_stream(self, session_id: str | None) -> tuple[SessionContext, bool]:
        """
        Find the context for a server-push stream.

        Only a stream opened with no token at all may mint a session (and only
        when ``create_on_stream_open`` is set). A token that is unknown or was
        closed is rejected like any other request past the handshake.

        Returns:
            (context, created) where ``created`` is True if this call minted it

        Raises:
            ProtocolOrderingError: Unknown token, or no token and minting disabled
        """
        async with self._lock:
            if session_id:
                ctx = self._sessions.get(session_id)
                if ctx is None:
                    raise ProtocolOrderingError(session_id=session_id)
                created = False
            elif self.create_on_stream_open:
                ctx = await self._create_locked("stream")
                created = True
            else:
                raise ProtocolOrderingError()
            ctx.touch()
            return ctx, created

    async def _release(self, ctx: SessionContext, reason: str) -> None:
        try:
            await ctx.binding.close()
        except Exception:
            logger.exception(f"Error closing transport for session {ctx.session_id}")
        logger.info(f"Session closed {ctx.session_id} ({reason}, total={len(self._sessions)})")
        self._emit(SessionEvent("closed", ctx.session_id, reason))

    async def close(self, session_id: str | None, reason: str = "client") -> bool:
        """
        Close one session. Unknown or already-closed tokens are a no-op.

        Returns:
            True if a live session was closed
        """
        if not session_id:
            return False
        async with self._lock:
            ctx = self._sessions.pop(session_id, None)
        if ctx is None:
            return False
        await self._release(ctx, reason)
        return True

    async def discard(self, session_id: str, reason: str = "ended") -> bool:
        """Forget a session whose transport already went away on its own."""
        async with self._lock:
            ctx = self._sessions.pop(session_id, None)
        if ctx is None:
            return False
        logger.info(f"Session ended {session_id} ({reason}, total={len(self._sessions)})")
        self._emit(SessionEvent("closed", session_id, reason))
        return True

    async def clear(self) -> int:
        """Close every session (administrative reset). Returns how many were closed."""
        async with self._lock:
            contexts = list(self._sessions.values())
            self._sessions.clear()
        for ctx in contexts:
            await self._release(ctx, "cleared")
        if contexts:
            logger.info(f"Cleared {len(contexts)} session(s)")
        return len(contexts)

    async def expire_idle(self, max_idle_s: float, now: float | None = None) -> list[str]:
        """Close sessions not seen for more than ``max_idle_s`` seconds."""
        if max_idle_s <= 0:
            return []
        now = time.time() if now is None else now
        async with self._lock:
            stale = [
                ctx for ctx in self._sessions.values() if now - ctx.last_seen > max_idle_s
            ]
            for ctx in stale:
                del self._sessions[ctx.session_id]
        for ctx in stale:
            await self._release(ctx, "idle")
        return [ctx.session_id for ctx in stale]
