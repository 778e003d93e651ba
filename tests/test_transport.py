"""Tests for the line-delimited JSON-RPC transport."""

import asyncio
import json

import pytest

from signalrelay.rpc.errors import (
    PendingCallLimitError,
    RpcError,
    RpcTimeoutError,
    TransportClosedError,
    TransportError,
    TransportNotWritableError,
)
from signalrelay.rpc.transport import MAX_PENDING_CALLS, RpcTransport


class FakeWriter:
    """Records written lines in place of signal-cli's stdin."""

    def __init__(self, closing=False, fail=False):
        self.lines: list[dict] = []
        self.closing = closing
        self.fail = fail

    def write(self, data: bytes) -> None:
        if self.fail:
            raise BrokenPipeError("pipe closed")
        assert data.endswith(b"\n")
        self.lines.append(json.loads(data))

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closing


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def _line(obj) -> bytes:
    return (json.dumps(obj) + "\n").encode()


class TestCall:
    @pytest.mark.asyncio
    async def test_request_shape_and_result(self):
        writer = FakeWriter()
        transport = RpcTransport(writer)

        task = asyncio.create_task(transport.call("version", {"x": 1}))
        await _settle()

        assert writer.lines == [{"jsonrpc": "2.0", "method": "version", "id": "rpc-1", "params": {"x": 1}}]
        assert transport.pending_ids == ["rpc-1"]

        transport.feed(_line({"jsonrpc": "2.0", "id": "rpc-1", "result": {"version": "0.13.4"}}))
        assert await task == {"version": "0.13.4"}
        assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_ids_increase(self):
        writer = FakeWriter()
        transport = RpcTransport(writer)
        tasks = [asyncio.create_task(transport.call("send")) for _ in range(3)]
        await _settle()
        assert [line["id"] for line in writer.lines] == ["rpc-1", "rpc-2", "rpc-3"]
        transport.close()
        for task in tasks:
            with pytest.raises(TransportClosedError):
                await task

    @pytest.mark.asyncio
    async def test_responses_matched_by_id_not_order(self):
        writer = FakeWriter()
        transport = RpcTransport(writer)
        first = asyncio.create_task(transport.call("a"))
        second = asyncio.create_task(transport.call("b"))
        await _settle()

        transport.feed(_line({"id": "rpc-2", "result": "B"}) + _line({"id": "rpc-1", "result": "A"}))

        assert await first == "A"
        assert await second == "B"

    @pytest.mark.asyncio
    async def test_error_response_raises(self):
        transport = RpcTransport(FakeWriter())
        task = asyncio.create_task(transport.call("send"))
        await _settle()

        transport.feed(_line({"id": "rpc-1", "error": {"code": -1, "message": "Invalid recipient"}}))

        with pytest.raises(RpcError, match="Invalid recipient") as exc_info:
            await task
        assert exc_info.value.code == -1

    @pytest.mark.asyncio
    async def test_timeout_removes_entry(self):
        transport = RpcTransport(FakeWriter(), call_timeout=0.05)
        with pytest.raises(RpcTimeoutError, match="version"):
            await transport.call("version")
        assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_ignored(self):
        transport = RpcTransport(FakeWriter(), call_timeout=0.01)
        with pytest.raises(RpcTimeoutError):
            await transport.call("version")
        transport.feed(_line({"id": "rpc-1", "result": "late"}))
        assert transport.pending_count == 0


class TestBackPressure:
    def test_default_cap(self):
        assert RpcTransport(FakeWriter()).max_pending == MAX_PENDING_CALLS == 100

    @pytest.mark.asyncio
    async def test_cap_rejects_without_writing(self):
        writer = FakeWriter()
        transport = RpcTransport(writer, max_pending=2)
        tasks = [asyncio.create_task(transport.call("send")) for _ in range(2)]
        await _settle()
        assert len(writer.lines) == 2

        with pytest.raises(PendingCallLimitError):
            await transport.call("send")
        assert len(writer.lines) == 2
        assert transport.pending_count == 2

        transport.close()
        await asyncio.gather(*tasks, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_not_writable_registers_nothing(self):
        writer = FakeWriter(closing=True)
        transport = RpcTransport(writer)
        with pytest.raises(TransportNotWritableError):
            await transport.call("send")
        assert transport.pending_count == 0
        assert writer.lines == []

    @pytest.mark.asyncio
    async def test_no_writer(self):
        transport = RpcTransport(None)
        with pytest.raises(TransportNotWritableError):
            await transport.call("send")

    @pytest.mark.asyncio
    async def test_write_failure_rejects_immediately(self):
        transport = RpcTransport(FakeWriter(fail=True))
        with pytest.raises(TransportError, match="write to signal-cli failed"):
            await transport.call("send")
        assert transport.pending_count == 0


class TestReceive:
    def test_unknown_id_ignored(self):
        transport = RpcTransport(FakeWriter())
        transport.feed(_line({"id": "rpc-42", "result": "nobody asked"}))
        assert transport.pending_count == 0

    def test_malformed_lines_dropped(self):
        seen = []
        transport = RpcTransport(FakeWriter(), lambda method, params: seen.append(params))
        transport.feed(
            b"INFO starting up\n"
            b"{not json\n"
            b"[1, 2, 3]\n"
            b"\n"
            + _line({"method": "receive", "params": {"envelope": {"n": 1}}})
        )
        assert seen == [{"envelope": {"n": 1}}]

    def test_partial_lines_reassembled(self):
        seen = []
        transport = RpcTransport(FakeWriter(), lambda method, params: seen.append(params))
        data = _line({"method": "receive", "params": {"envelope": {"n": 2}}})
        transport.feed(data[:10])
        assert seen == []
        transport.feed(data[10:])
        assert seen == [{"envelope": {"n": 2}}]

    def test_unrecognized_notification_ignored(self):
        seen = []
        transport = RpcTransport(FakeWriter(), lambda method, params: seen.append(method))
        transport.feed(_line({"method": "somethingElse", "params": {}}))
        assert seen == []

    @pytest.mark.asyncio
    async def test_async_notification_handler(self):
        seen = []

        async def handler(method, params):
            seen.append(params["envelope"])

        transport = RpcTransport(FakeWriter(), handler)
        transport.feed(_line({"method": "receive", "params": {"envelope": "x"}}))
        await _settle()
        assert seen == ["x"]

    def test_buffer_cap_truncates_stalled_line(self):
        seen = []
        transport = RpcTransport(FakeWriter(), lambda method, params: seen.append(params), max_buffer=64)
        transport.feed(b"x" * 500)
        assert len(transport._buffer) == 64
        # The truncated junk prefixes the next line, which is then unparseable
        transport.feed(_line({"method": "receive", "params": {"n": 1}}))
        assert seen == []
        transport.feed(_line({"method": "receive", "params": {"n": 2}}))
        assert seen == [{"n": 2}]


class TestClose:
    @pytest.mark.asyncio
    async def test_close_rejects_all_pending(self):
        writer = FakeWriter()
        transport = RpcTransport(writer)
        tasks = [asyncio.create_task(transport.call("send")) for _ in range(3)]
        await _settle()

        transport.close("disconnected")

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, TransportClosedError) for r in results)
        assert transport.pending_count == 0
        assert not transport.writable

    @pytest.mark.asyncio
    async def test_response_after_close_ignored(self):
        transport = RpcTransport(FakeWriter())
        task = asyncio.create_task(transport.call("send"))
        await _settle()
        transport.close()
        transport.feed(_line({"id": "rpc-1", "result": "ok"}))
        with pytest.raises(TransportClosedError):
            await task


class TestReaderResilience:
    @pytest.mark.asyncio
    async def test_deeply_nested_line_dropped(self):
        transport = RpcTransport(FakeWriter())
        task = asyncio.create_task(transport.call("version"))
        await _settle()

        transport.feed(b'{"a":' + b"[" * 100000 + b"]" * 100000 + b"}\n")
        transport.feed(_line({"id": "rpc-1", "result": {"version": "0.13.4"}}))

        assert await task == {"version": "0.13.4"}

    def test_failing_handler_does_not_stop_reader(self):
        seen = []

        def handler(method, params):
            seen.append(params["n"])
            if params["n"] == 1:
                raise RuntimeError("handler broke")

        transport = RpcTransport(FakeWriter(), handler)
        transport.feed(
            _line({"method": "receive", "params": {"n": 1}})
            + _line({"method": "receive", "params": {"n": 2}})
        )
        assert seen == [1, 2]
