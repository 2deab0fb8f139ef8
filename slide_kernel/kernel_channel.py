"""
Kernel Channel
==============

One WebSocket per kernel session, speaking the legacy JSON framing of
`/api/kernels/{id}/channels`. A reader task routes every inbound message by
`parent_header.msg_id` to the ExecutionFuture that requested it.

An execution is complete only when BOTH of these have arrived:
- the shell `execute_reply`
- the iopub `status: idle` for the same request
Output messages can race either signal, so neither alone is treated as done.
"""

import json
import uuid
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
import websockets

from .errors import KernelChannelClosed

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "5.3"

_DONE = object()


def _default_connect(url: str) -> Awaitable[Any]:
    return websockets.connect(url, max_size=None)


class ExecutionFuture:
    """
    Pending execute_request. Async-iterate it to receive iopub messages in
    arrival order; iteration stops once the request is complete.
    """

    def __init__(self, msg_id: str):
        self.msg_id = msg_id
        self.reply: Optional[Dict[str, Any]] = None
        self._idle = False
        self._finished = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def done(self) -> bool:
        return self._finished

    def _deliver_iopub(self, msg: Dict[str, Any]) -> None:
        if self._finished:
            return
        self._queue.put_nowait(msg)
        content = msg.get("content") or {}
        if msg.get("msg_type") == "status" and content.get("execution_state") == "idle":
            self._idle = True
            self._maybe_finish()

    def _deliver_reply(self, msg: Dict[str, Any]) -> None:
        if self._finished:
            return
        self.reply = msg.get("content") or {}
        self._maybe_finish()

    def _maybe_finish(self) -> None:
        if self.reply is not None and self._idle:
            self._finished = True
            self._queue.put_nowait(_DONE)

    def _fail(self, error: Exception) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(error)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if item is _DONE:
            # Leave the sentinel for any later iterator
            self._queue.put_nowait(_DONE)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._queue.put_nowait(item)
            raise item
        return item


class KernelChannel:
    """WebSocket transport for a single kernel session."""

    def __init__(
        self,
        url: str,
        client_session_id: Optional[str] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        username: str = "slide-kernel",
    ):
        self.url = url
        self.client_session_id = client_session_id or uuid.uuid4().hex
        self.username = username
        self._connect = connect or _default_connect
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, ExecutionFuture] = {}
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self) -> "KernelChannel":
        try:
            self._ws = await self._connect(self.url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise KernelChannelClosed(f"Could not connect to kernel channel: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("[KERNEL] Channel open", session_id=self.client_session_id)
        return self

    def _new_message(self, msg_type: str, content: Dict[str, Any], channel: str = "shell") -> Dict[str, Any]:
        return {
            "header": {
                "msg_id": uuid.uuid4().hex,
                "msg_type": msg_type,
                "username": self.username,
                "session": self.client_session_id,
                "date": datetime.now(timezone.utc).isoformat(),
                "version": PROTOCOL_VERSION,
            },
            "parent_header": {},
            "metadata": {},
            "content": content,
            "channel": channel,
            "buffers": [],
        }

    async def request_execute(self, code: str, store_history: bool = True) -> ExecutionFuture:
        if not self.is_open:
            raise KernelChannelClosed("Kernel channel is not open.")

        msg = self._new_message(
            "execute_request",
            {
                "code": code,
                "silent": False,
                "store_history": store_history,
                "user_expressions": {},
                "allow_stdin": False,
                "stop_on_error": True,
            },
        )
        msg_id = msg["header"]["msg_id"]
        # Register before sending so no reply can arrive unrouted
        future = ExecutionFuture(msg_id)
        self._pending[msg_id] = future
        try:
            await self._ws.send(json.dumps(msg))
        except websockets.ConnectionClosed as e:
            self._pending.pop(msg_id, None)
            raise KernelChannelClosed(f"Kernel channel closed while sending: {e}") from e
        return future

    async def _read_loop(self) -> None:
        reason = "Kernel channel closed."
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    # Binary frames carry buffers we never request
                    logger.debug("[KERNEL] Ignoring binary frame", size=len(raw))
                    continue
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.warning("[KERNEL] Dropping undecodable frame")
                    continue
                if not isinstance(msg, dict):
                    logger.warning("[KERNEL] Dropping non-object frame", kind=type(msg).__name__)
                    continue
                self._route(msg)
        except websockets.ConnectionClosed as e:
            reason = f"Kernel channel closed: {e}"
        finally:
            self._closed = True
            self._fail_pending(reason)

    def _route(self, msg: Dict[str, Any]) -> None:
        parent = msg.get("parent_header")
        parent_id = parent.get("msg_id") if isinstance(parent, dict) else None
        future = self._pending.get(parent_id) if parent_id else None
        if future is None:
            return

        msg_type = msg.get("msg_type") or (msg.get("header") or {}).get("msg_type")
        msg["msg_type"] = msg_type
        channel = msg.get("channel")

        if channel == "iopub":
            future._deliver_iopub(msg)
        elif channel == "shell" and msg_type == "execute_reply":
            future._deliver_reply(msg)

        if future.done:
            self._pending.pop(parent_id, None)

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            future._fail(KernelChannelClosed(reason))
        if pending:
            logger.warning(f"[KERNEL] {reason}", failed_requests=len(pending))

    async def close(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        self._closed = True
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[KERNEL] Error closing channel: {e}")
        if self._reader is not None:
            reader, self._reader = self._reader, None
            if not reader.done():
                reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"[KERNEL] Reader task ended with {e!r}")
        self._fail_pending("Kernel channel closed.")
        logger.info("[KERNEL] Channel closed", session_id=self.client_session_id)
