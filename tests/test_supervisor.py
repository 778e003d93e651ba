"""Tests for signal-cli process supervision."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from signalrelay.rpc.errors import SupervisorError, TransportClosedError, TransportNotWritableError
from signalrelay.rpc.supervisor import ProcessSupervisor, SupervisorState

SPAWN = "signalrelay.rpc.supervisor.asyncio.create_subprocess_exec"


class FakeStdin:
    def __init__(self, proc):
        self.proc = proc
        self.closed = False
        self.requests: list[dict] = []

    def write(self, data: bytes) -> None:
        msg = json.loads(data)
        self.requests.append(msg)
        self.proc.on_request(msg)

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed


class FakeProcess:
    """Stands in for ``signal-cli jsonRpc``; answers ``version`` when healthy."""

    def __init__(self, healthy: bool = True):
        self.stdin = FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.healthy = healthy
        self.killed = False
        self.terminated = False
        self._exited = asyncio.Event()

    def on_request(self, msg: dict) -> None:
        if msg["method"] == "version" and self.healthy:
            self.respond(msg["id"], {"version": "0.13.4"})

    def respond(self, call_id: str, result) -> None:
        line = json.dumps({"jsonrpc": "2.0", "id": call_id, "result": result}) + "\n"
        self.stdout.feed_data(line.encode())

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdin.closed = True
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


def _supervisor(**kwargs) -> ProcessSupervisor:
    defaults = dict(health_timeout=2.0, health_poll=0.01, restart_delay=0.01, call_timeout=0.2)
    defaults.update(kwargs)
    return ProcessSupervisor(["signal-cli", "-a", "+15550000000", "jsonRpc"], **defaults)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestConnect:
    @pytest.mark.asyncio
    async def test_becomes_healthy(self):
        proc = FakeProcess()
        supervisor = _supervisor()
        with patch(SPAWN, new=AsyncMock(return_value=proc)) as spawn:
            await supervisor.connect()

        assert supervisor.state is SupervisorState.HEALTHY
        assert supervisor.is_healthy
        assert spawn.call_args.args == ("signal-cli", "-a", "+15550000000", "jsonRpc")
        assert proc.stdin.requests[0]["method"] == "version"
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_healthy_hooks_run(self):
        hook = AsyncMock()
        supervisor = _supervisor()
        supervisor.add_healthy_hook(hook)
        with patch(SPAWN, new=AsyncMock(return_value=FakeProcess())):
            await supervisor.connect()
        await _wait_for(lambda: hook.await_count == 1)
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_failing_hook_is_not_fatal(self):
        supervisor = _supervisor()
        supervisor.add_healthy_hook(AsyncMock(side_effect=RuntimeError("boom")))
        with patch(SPAWN, new=AsyncMock(return_value=FakeProcess())):
            await supervisor.connect()
        await asyncio.sleep(0.02)
        assert supervisor.is_healthy
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_connect_when_healthy_is_noop(self):
        supervisor = _supervisor()
        spawn = AsyncMock(return_value=FakeProcess())
        with patch(SPAWN, new=spawn):
            await supervisor.connect()
            await supervisor.connect()
        assert spawn.await_count == 1
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_health_deadline_kills_process(self):
        proc = FakeProcess(healthy=False)
        supervisor = _supervisor(health_timeout=0.2, call_timeout=0.05)
        with patch(SPAWN, new=AsyncMock(return_value=proc)):
            with pytest.raises(SupervisorError, match="failed to become healthy"):
                await supervisor.connect()

        assert proc.killed
        assert supervisor.state is SupervisorState.STOPPED
        assert supervisor.transport is None

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        supervisor = _supervisor()
        with patch(SPAWN, new=AsyncMock(side_effect=FileNotFoundError("signal-cli"))):
            with pytest.raises(SupervisorError, match="Failed to spawn"):
                await supervisor.connect()
        assert supervisor.state is SupervisorState.STOPPED

    @pytest.mark.asyncio
    async def test_exit_during_startup_fails_fast(self):
        proc = FakeProcess(healthy=False)
        supervisor = _supervisor(health_timeout=5.0, call_timeout=1.0)
        asyncio.get_running_loop().call_later(0.02, proc.exit, 1)
        with patch(SPAWN, new=AsyncMock(return_value=proc)):
            with pytest.raises(SupervisorError, match="exited during startup"):
                await asyncio.wait_for(supervisor.connect(), timeout=2.0)
        assert supervisor.state is SupervisorState.STOPPED


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_idempotent_from_any_state(self):
        supervisor = _supervisor()
        await supervisor.disconnect()
        assert supervisor.state is SupervisorState.STOPPED

        proc = FakeProcess()
        with patch(SPAWN, new=AsyncMock(return_value=proc)):
            await supervisor.connect()
        await supervisor.disconnect()
        await supervisor.disconnect()

        assert proc.terminated
        assert supervisor.state is SupervisorState.STOPPED

    @pytest.mark.asyncio
    async def test_rejects_pending_calls(self):
        supervisor = _supervisor(call_timeout=5.0)
        with patch(SPAWN, new=AsyncMock(return_value=FakeProcess())):
            await supervisor.connect()

        pending = asyncio.create_task(supervisor.call("listGroups"))
        await asyncio.sleep(0.01)
        assert supervisor.transport.pending_count == 1

        await supervisor.disconnect()
        with pytest.raises(TransportClosedError, match="disconnected"):
            await pending

    @pytest.mark.asyncio
    async def test_call_when_stopped(self):
        supervisor = _supervisor()
        with pytest.raises(TransportNotWritableError):
            await supervisor.call("version")

    @pytest.mark.asyncio
    async def test_deliberate_stop_does_not_restart(self):
        supervisor = _supervisor()
        spawn = AsyncMock(return_value=FakeProcess())
        with patch(SPAWN, new=spawn):
            await supervisor.connect()
            await supervisor.disconnect()
            await asyncio.sleep(0.05)
        assert spawn.await_count == 1
        assert supervisor.state is SupervisorState.STOPPED


class TestRestart:
    @pytest.mark.asyncio
    async def test_unexpected_exit_restarts(self):
        first, second = FakeProcess(), FakeProcess()
        supervisor = _supervisor(restart_delay=0.05)
        spawn = AsyncMock(side_effect=[first, second])
        with patch(SPAWN, new=spawn):
            await supervisor.connect()
            first.exit(1)
            await _wait_for(lambda: supervisor.state is SupervisorState.UNHEALTHY)
            await _wait_for(lambda: supervisor.state is SupervisorState.HEALTHY)

        assert spawn.await_count == 2
        assert second.stdin.requests[0]["method"] == "version"
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_exit_rejects_inflight_calls(self):
        proc = FakeProcess()
        supervisor = _supervisor(call_timeout=5.0, restart_delay=10.0)
        with patch(SPAWN, new=AsyncMock(return_value=proc)):
            await supervisor.connect()
            pending = asyncio.create_task(supervisor.call("listGroups"))
            await asyncio.sleep(0.01)
            proc.exit(1)
            with pytest.raises(TransportClosedError):
                await pending
        await supervisor.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_scheduled_restart(self):
        first = FakeProcess()
        supervisor = _supervisor(restart_delay=0.05)
        spawn = AsyncMock(side_effect=[first, FakeProcess()])
        with patch(SPAWN, new=spawn):
            await supervisor.connect()
            first.exit(1)
            await _wait_for(lambda: supervisor.state is SupervisorState.UNHEALTHY)
            await supervisor.disconnect()
            await asyncio.sleep(0.1)
        assert spawn.await_count == 1
        assert supervisor.state is SupervisorState.STOPPED
