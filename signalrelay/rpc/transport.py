"""Line-delimited JSON-RPC over signal-cli's stdio."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from signalrelay.rpc.errors import (
    PendingCallLimitError,
    RpcError,
    RpcTimeoutError,
    TransportClosedError,
    TransportError,
    TransportNotWritableError,
)

MAX_PENDING_CALLS = 100
CALL_TIMEOUT_S = 30.0
MAX_BUFFER_BYTES = 1_000_000

NotificationHandler = Callable[[str, dict], Awaitable[None] | None]


class LineWriter(Protocol):
    """The subset of :class:`asyncio.StreamWriter` the transport needs."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def is_closing(self) -> bool: ...


@dataclass
class PendingCall:
    """A request waiting for its response, keyed by id in the call table."""

    id: str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    deadline: float  # loop.time() based


class RpcTransport:
    """Request/response correlation on top of a newline-delimited stream.

    Outbound requests are written to ``writer``; raw stdout bytes are pushed
    in with :meth:`feed`. Responses are matched to calls by id only, so calls
    may complete in any order. Notifications (no id) are handed to
    ``on_notification`` when their method is recognized.
    """

    def __init__(
        self,
        writer: LineWriter | None,
        on_notification: NotificationHandler | None = None,
        *,
        max_pending: int = MAX_PENDING_CALLS,
        call_timeout: float = CALL_TIMEOUT_S,
        max_buffer: int = MAX_BUFFER_BYTES,
        notification_methods: frozenset[str] = frozenset({"receive"}),
    ):
        self._writer = writer
        self._on_notification = on_notification
        self.max_pending = max_pending
        self.call_timeout = call_timeout
        self.max_buffer = max_buffer
        self._notification_methods = notification_methods
        self._buffer = bytearray()
        self._pending: dict[str, PendingCall] = {}
        self._next_id = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def writable(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    async def call(
        self, method: str, params: dict | None = None, timeout: float | None = None
    ) -> Any:
        """Send a request and wait for the correlated result.

        Raises PendingCallLimitError or TransportNotWritableError without
        touching the wire, RpcTimeoutError when no response arrives, RpcError
        when the peer reports an error.
        """
        if len(self._pending) >= self.max_pending:
            raise PendingCallLimitError(
                f"RPC cap exceeded ({self.max_pending} pending calls)"
            )
        if not self.writable:
            raise TransportNotWritableError("signal-cli stdin not writable")

        self._next_id += 1
        call_id = f"rpc-{self._next_id}"
        line = json.dumps(
            {"jsonrpc": "2.0", "method": method, "id": call_id, "params": params or {}},
            ensure_ascii=False,
        ) + "\n"

        loop = asyncio.get_running_loop()
        timeout = self.call_timeout if timeout is None else timeout
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, call_id)
        self._pending[call_id] = PendingCall(
            id=call_id,
            method=method,
            future=future,
            timer=timer,
            deadline=loop.time() + timeout,
        )

        try:
            self._writer.write(line.encode("utf-8"))
            await self._writer.drain()
        except Exception as e:
            self._discard(call_id)
            raise TransportError(f"write to signal-cli failed: {e}") from e

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(call_id)
            raise

    def _expire(self, call_id: str) -> None:
        pending = self._pending.pop(call_id, None)
        if pending and not pending.future.done():
            pending.future.set_exception(RpcTimeoutError(f"RPC timeout: {pending.method}"))

    def _discard(self, call_id: str) -> None:
        pending = self._pending.pop(call_id, None)
        if pending:
            pending.timer.cancel()

    def close(self, reason: str = "disconnected") -> None:
        """Reject every pending call and detach from the writer."""
        pending, self._pending = self._pending, {}
        for call in pending.values():
            call.timer.cancel()
            if not call.future.done():
                call.future.set_exception(TransportClosedError(reason))
        if pending:
            logger.debug(f"Rejected {len(pending)} pending RPC call(s): {reason}")
        self._writer = None
        self._buffer.clear()

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Accept raw stdout bytes and process every complete line."""
        self._buffer.extend(data)
        *lines, rest = self._buffer.split(b"\n")
        if len(rest) > self.max_buffer:
            # Keep only the newest window of a line that never ends
            logger.warning(
                f"signal-cli stdout buffer exceeded {self.max_buffer} bytes, truncating"
            )
            rest = rest[-self.max_buffer:]
        self._buffer = bytearray(rest)
        for raw in lines:
            self._handle_line(raw)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        if not line.startswith("{"):
            logger.debug(f"Non-JSON stdout line: {line[:200]}")
            return
        try:
            msg = json.loads(line)
        except (ValueError, RecursionError):
            logger.debug(f"Unparseable stdout line: {line[:200]}")
            return
        if not isinstance(msg, dict):
            return
        try:
            self.dispatch(msg)
        except Exception:
            logger.exception("Failed to dispatch signal-cli message")

    def dispatch(self, msg: dict) -> None:
        """Route one decoded object to its pending call or notification handler."""
        msg_id = msg.get("id")
        if msg_id is not None:
            pending = self._pending.pop(str(msg_id), None)
            if pending is None:
                logger.debug(f"Ignoring response for unknown id {msg_id!r}")
                return
            pending.timer.cancel()
            if pending.future.done():
                return
            if msg.get("error") is not None:
                pending.future.set_exception(RpcError(msg["error"]))
            else:
                pending.future.set_result(msg.get("result"))
            return

        method = msg.get("method")
        if method not in self._notification_methods or not self._on_notification:
            return
        params = msg.get("params")
        result = self._on_notification(method, params if isinstance(params, dict) else {})
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Notification handler failed")
