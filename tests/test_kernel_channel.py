"""
Tests for KernelChannel: request framing, routing by parent msg_id and the
two-signal completion rule.
"""

import asyncio

import pytest

from slide_kernel.errors import KernelChannelClosed
from slide_kernel.kernel_channel import KernelChannel

from conftest import SocketFactory, echo_kernel, kernel_message


async def open_channel(factory: SocketFactory) -> KernelChannel:
    channel = KernelChannel("ws://localhost:18989/api/kernels/k1/channels?token=t", connect=factory)
    return await channel.open()


async def collect(future):
    return [msg async for msg in future]


@pytest.mark.asyncio
class TestRequestFraming:
    async def test_execute_request_shape(self, socket_factory):
        """execute_request goes out on the shell channel with protocol 5.3 content."""
        channel = await open_channel(socket_factory)
        future = await channel.request_execute("print(1)", store_history=False)
        await collect(future)

        sent = socket_factory.last.sent[0]
        assert sent["channel"] == "shell"
        assert sent["header"]["msg_type"] == "execute_request"
        assert sent["header"]["version"] == "5.3"
        assert sent["header"]["session"] == channel.client_session_id
        assert sent["content"] == {
            "code": "print(1)",
            "silent": False,
            "store_history": False,
            "user_expressions": {},
            "allow_stdin": False,
            "stop_on_error": True,
        }
        await channel.close()

    async def test_request_on_closed_channel_raises(self, socket_factory):
        channel = await open_channel(socket_factory)
        await channel.close()
        with pytest.raises(KernelChannelClosed):
            await channel.request_execute("1")

    async def test_connect_failure_is_wrapped(self, socket_factory):
        socket_factory.fail_next = ConnectionRefusedError("refused")
        channel = KernelChannel("ws://localhost:1/x", connect=socket_factory)
        with pytest.raises(KernelChannelClosed, match="Could not connect"):
            await channel.open()


@pytest.mark.asyncio
class TestCompletion:
    async def test_iopub_messages_in_arrival_order(self, socket_factory):
        channel = await open_channel(socket_factory)
        future = await channel.request_execute("print(hello)")
        messages = await collect(future)

        types = [m["msg_type"] for m in messages]
        assert types == ["status", "execute_input", "stream", "status"]
        assert future.reply == {"status": "ok", "execution_count": 1}
        assert future.done
        await channel.close()

    async def test_reply_alone_does_not_complete(self):
        """Completion waits for the idle status even after execute_reply arrived."""
        held = []

        def without_idle(request):
            replies = echo_kernel(request)
            held.append(replies.pop())  # the idle status
            return replies

        factory = SocketFactory(script=without_idle)
        channel = await open_channel(factory)
        future = await channel.request_execute("print(1)")

        task = asyncio.create_task(collect(future))
        await asyncio.sleep(0.05)
        assert not task.done()
        assert future.reply is not None

        factory.last.push(held[0])
        messages = await asyncio.wait_for(task, timeout=1.0)
        assert messages[-1]["content"]["execution_state"] == "idle"
        await channel.close()

    async def test_idle_before_reply_still_waits_for_reply(self):
        held = []

        def reply_last(request):
            replies = echo_kernel(request)
            reply = next(r for r in replies if r["msg_type"] == "execute_reply")
            replies.remove(reply)
            held.append(reply)
            return replies

        factory = SocketFactory(script=reply_last)
        channel = await open_channel(factory)
        future = await channel.request_execute("print(1)")

        task = asyncio.create_task(collect(future))
        await asyncio.sleep(0.05)
        assert not task.done()

        factory.last.push(held[0])
        await asyncio.wait_for(task, timeout=1.0)
        assert future.done
        await channel.close()

    async def test_messages_for_unknown_parents_are_dropped(self, socket_factory):
        channel = await open_channel(socket_factory)
        stranger = {"header": {"msg_id": "not-ours", "msg_type": "execute_request"}}
        socket_factory.last.push(kernel_message(stranger, "iopub", "stream", {"name": "stdout", "text": "x"}))

        future = await channel.request_execute("print(mine)")
        messages = await collect(future)
        texts = [m["content"].get("text") for m in messages if m["msg_type"] == "stream"]
        assert texts == ["mine\n"]
        await channel.close()

    async def test_non_object_frames_are_dropped(self, socket_factory):
        channel = await open_channel(socket_factory)
        for frame in ("1", '"text"', "[1, 2]", "null", '{"parent_header": 5}'):
            socket_factory.last.push(frame)

        future = await channel.request_execute("print(still_alive)")
        messages = await asyncio.wait_for(collect(future), timeout=1.0)

        assert any(m["msg_type"] == "stream" for m in messages)
        assert channel.is_open
        await channel.close()

    async def test_pending_request_fails_when_socket_drops(self):
        factory = SocketFactory(script=None)
        channel = await open_channel(factory)
        future = await channel.request_execute("print(1)")

        factory.last.drop()
        with pytest.raises(KernelChannelClosed):
            await asyncio.wait_for(collect(future), timeout=1.0)
        assert not channel.is_open


@pytest.mark.asyncio
class TestClose:
    async def test_close_is_idempotent(self, socket_factory):
        channel = await open_channel(socket_factory)
        await channel.close()
        await channel.close()
        assert socket_factory.last.closed
        assert not channel.is_open

    async def test_close_fails_pending_requests(self):
        factory = SocketFactory(script=None)
        channel = await open_channel(factory)
        future = await channel.request_execute("1")
        await channel.close()
        with pytest.raises(KernelChannelClosed):
            await collect(future)
