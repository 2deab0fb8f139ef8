"""
Pytest configuration and fixtures for slide-kernel tests.

Nothing here starts a real Jupyter server: REST traffic goes to an in-memory
FakeJupyterServer behind httpx.MockTransport, and kernel WebSockets are
FakeKernelSocket objects driven by a small scripted "echo kernel".
"""

import re
import sys
import json
import uuid
import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import websockets

from slide_kernel.config import SlideKernelSettings
from slide_kernel.models import ServerEndpoint

TOKEN = "test-token"


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with short timings so startup/shutdown tests stay quick."""
    return SlideKernelSettings(
        PORT=18989,
        TOKEN=TOKEN,
        POLL_INTERVAL=0.05,
        MAX_POLL_ATTEMPTS=10,
        SHUTDOWN_GRACE_PERIOD=1.0,
        PROBE_TIMEOUT=20.0,
        AUTO_REGISTER_KERNEL=True,
        STATE_DB_PATH=tmp_path / "state.db",
    )


@pytest.fixture
def endpoint(fast_settings):
    return ServerEndpoint(host="localhost", port=fast_settings.PORT, token=fast_settings.TOKEN)


# ---------------------------------------------------------------------------
# Fake kernel WebSocket
# ---------------------------------------------------------------------------


def kernel_message(parent: Dict[str, Any], channel: str, msg_type: str, content: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "header": {"msg_id": uuid.uuid4().hex, "msg_type": msg_type, "session": "fake-kernel"},
        "parent_header": parent["header"],
        "metadata": {},
        "content": content,
        "channel": channel,
        "msg_type": msg_type,
        "buffers": [],
    }


def echo_kernel(request: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Tiny scripted kernel:
    - print(<x>)  -> stream stdout "<x>\n"
    - raise ...   -> error output
    - display(<x>)-> display_data text/plain
    - anything else with a value -> execute_result text/plain
    """
    code = request["content"]["code"].strip()
    count = 1
    replies = [kernel_message(request, "iopub", "status", {"execution_state": "busy"})]
    replies.append(kernel_message(request, "iopub", "execute_input", {"code": code, "execution_count": count}))

    status = "ok"
    printed = re.fullmatch(r"print\((.*)\)", code)
    displayed = re.fullmatch(r"display\((.*)\)", code)
    if printed:
        text = printed.group(1).strip("'\"")
        replies.append(kernel_message(request, "iopub", "stream", {"name": "stdout", "text": f"{text}\n"}))
    elif code.startswith("raise"):
        status = "error"
        replies.append(
            kernel_message(
                request, "iopub", "error",
                {"ename": "ValueError", "evalue": "boom", "traceback": ["Traceback...", "ValueError: boom"]},
            )
        )
    elif displayed:
        replies.append(
            kernel_message(
                request, "iopub", "display_data",
                {"data": {"text/plain": displayed.group(1)}, "metadata": {}},
            )
        )
    elif code:
        replies.append(
            kernel_message(
                request, "iopub", "execute_result",
                {"data": {"text/plain": code}, "metadata": {}, "execution_count": count},
            )
        )

    replies.append(kernel_message(request, "shell", "execute_reply", {"status": status, "execution_count": count}))
    replies.append(kernel_message(request, "iopub", "status", {"execution_state": "idle"}))
    return replies


class FakeKernelSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, url: str = "", script: Optional[Callable] = echo_kernel):
        self.url = url
        self.script = script
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        msg = json.loads(data)
        self.sent.append(msg)
        if self.script is not None:
            for reply in self.script(msg):
                self.push(reply)

    def push(self, msg: Any) -> None:
        self._incoming.put_nowait(msg if isinstance(msg, (str, bytes)) else json.dumps(msg))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)


class SocketFactory:
    """Injectable `connect` that records every socket it hands out."""

    def __init__(self, script: Optional[Callable] = echo_kernel):
        self.script = script
        self.sockets: List[FakeKernelSocket] = []
        self.fail_next: Optional[Exception] = None

    async def __call__(self, url: str) -> FakeKernelSocket:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        sock = FakeKernelSocket(url, self.script)
        self.sockets.append(sock)
        return sock

    @property
    def last(self) -> FakeKernelSocket:
        return self.sockets[-1]


@pytest.fixture
def socket_factory():
    return SocketFactory()


# ---------------------------------------------------------------------------
# Fake Jupyter Server REST API
# ---------------------------------------------------------------------------


def kernelspec_model(name: str, python: str, display_name: str) -> Dict[str, Any]:
    return {
        "name": name,
        "spec": {
            "argv": [python, "-m", "ipykernel_launcher", "-f", "{connection_file}"],
            "display_name": display_name,
            "language": "python",
        },
        "resources": {},
    }


class FakeJupyterServer:
    """In-memory subset of the Jupyter Server REST API for httpx.MockTransport."""

    def __init__(self, token: str = TOKEN):
        self.token = token
        self.default = "python3"
        self.kernelspecs: Dict[str, Any] = {
            "python3": kernelspec_model("python3", sys.executable, "Python 3 (ipykernel)"),
        }
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.restarted: List[str] = []
        self.deleted: List[str] = []
        # (method, path prefix) -> (status, body)
        self.failures: Dict[tuple, tuple] = {}

    def fail(self, method: str, path_prefix: str, status: int = 500, body: str = "boom") -> None:
        self.failures[(method, path_prefix)] = (status, body)

    def add_kernel(self, name: str, python: str, display_name: str) -> None:
        self.kernelspecs[name] = kernelspec_model(name, python, display_name)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"token {self.token}":
            return httpx.Response(403, text="Forbidden")

        path = request.url.path
        method = request.method
        for (fail_method, prefix), (status, body) in self.failures.items():
            if method == fail_method and path.startswith(prefix):
                return httpx.Response(status, text=body)

        if method == "GET" and path == "/api/status":
            return httpx.Response(200, json={"connections": 0, "kernels": len(self.sessions)})

        if method == "GET" and path == "/api/kernelspecs":
            return httpx.Response(200, json={"default": self.default, "kernelspecs": self.kernelspecs})

        if method == "POST" and path == "/api/sessions":
            body = json.loads(request.content)
            kernel_name = body["kernel"]["name"]
            if kernel_name not in self.kernelspecs:
                return httpx.Response(404, text=f"No such kernel {kernel_name}")
            session_id = uuid.uuid4().hex
            self.sessions[session_id] = {
                "id": session_id,
                "path": body["path"],
                "name": body["name"],
                "type": body["type"],
                "kernel": {"id": uuid.uuid4().hex, "name": kernel_name},
            }
            return httpx.Response(201, json=self.sessions[session_id])

        if path.startswith("/api/sessions/"):
            session_id = path.rsplit("/", 1)[-1]
            if session_id not in self.sessions:
                return httpx.Response(404, text="Session not found")
            if method == "PATCH":
                kernel_name = json.loads(request.content)["kernel"]["name"]
                if kernel_name not in self.kernelspecs:
                    return httpx.Response(400, text=f"No such kernel {kernel_name}")
                self.sessions[session_id]["kernel"] = {"id": uuid.uuid4().hex, "name": kernel_name}
                return httpx.Response(200, json=self.sessions[session_id])
            if method == "DELETE":
                del self.sessions[session_id]
                self.deleted.append(session_id)
                return httpx.Response(204)

        match = re.fullmatch(r"/api/kernels/([^/]+)/restart", path)
        if method == "POST" and match:
            self.restarted.append(match.group(1))
            return httpx.Response(200, json={"id": match.group(1), "name": "python3"})

        return httpx.Response(404, text="Not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def jupyter_server():
    return FakeJupyterServer()


@pytest.fixture
async def http_client(jupyter_server):
    client = jupyter_server.client()
    yield client
    await client.aclose()


class FakeSupervisor:
    """Records start/stop calls instead of spawning a server."""

    def __init__(self, endpoint: ServerEndpoint, error: Optional[Exception] = None):
        self.endpoint = endpoint
        self.error = error
        self.started: List[str] = []
        self.stop_calls = 0

    async def start(self, interpreter: str) -> ServerEndpoint:
        self.started.append(interpreter)
        if self.error is not None:
            raise self.error
        return self.endpoint

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeResolver:
    def __init__(self, interpreter: str = sys.executable, error: Optional[Exception] = None):
        self.interpreter = interpreter
        self.error = error
        self.calls: List[tuple] = []

    async def resolve(self, saved_path, document_path=None) -> str:
        self.calls.append((saved_path, document_path))
        if self.error is not None:
            raise self.error
        return saved_path or self.interpreter
