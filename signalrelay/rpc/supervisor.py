"""signal-cli subprocess supervision: spawn, health probe, restart, teardown."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from signalrelay.rpc.errors import SignalRelayError, SupervisorError, TransportNotWritableError
from signalrelay.rpc.transport import (
    CALL_TIMEOUT_S,
    MAX_BUFFER_BYTES,
    MAX_PENDING_CALLS,
    NotificationHandler,
    RpcTransport,
)

HEALTH_TIMEOUT_S = 120.0
HEALTH_POLL_S = 0.5
RESTART_DELAY_S = 5.0
TERMINATE_GRACE_S = 5.0
PROBE_METHOD = "version"
_READ_CHUNK = 64 * 1024

HealthyHook = Callable[[], Awaitable[Any]]


class SupervisorState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProcessSupervisor:
    """
    Owns the signal-cli ``jsonRpc`` subprocess and the transport on its stdio.

    ``connect()`` spawns the process and polls a version probe until it
    answers. An unexpected exit after that schedules a restart after a fixed
    delay. ``disconnect()`` tears everything down from any state.
    """

    def __init__(
        self,
        command: list[str],
        on_notification: NotificationHandler | None = None,
        *,
        health_timeout: float = HEALTH_TIMEOUT_S,
        health_poll: float = HEALTH_POLL_S,
        restart_delay: float = RESTART_DELAY_S,
        call_timeout: float = CALL_TIMEOUT_S,
        max_pending: int = MAX_PENDING_CALLS,
        max_buffer: int = MAX_BUFFER_BYTES,
    ):
        self.command = command
        self._on_notification = on_notification
        self.health_timeout = health_timeout
        self.health_poll = health_poll
        self.restart_delay = restart_delay
        self.call_timeout = call_timeout
        self.max_pending = max_pending
        self.max_buffer = max_buffer

        self.state = SupervisorState.STOPPED
        self.transport: RpcTransport | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._io_tasks: list[asyncio.Task] = []
        self._restart_task: asyncio.Task | None = None
        self._hook_tasks: set[asyncio.Task] = set()
        self._healthy_hooks: list[HealthyHook] = []

    @property
    def is_healthy(self) -> bool:
        return self.state is SupervisorState.HEALTHY

    def add_healthy_hook(self, hook: HealthyHook) -> None:
        """Run *hook* (best effort) every time the process becomes healthy."""
        self._healthy_hooks.append(hook)

    async def call(self, method: str, params: dict | None = None, timeout: float | None = None) -> Any:
        """Issue an RPC call on the current transport."""
        if self.transport is None:
            raise TransportNotWritableError("signal-cli is not running")
        return await self.transport.call(method, params, timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Spawn signal-cli and wait until it answers the health probe.

        Raises SupervisorError if the process cannot be spawned or does not
        become healthy before the deadline; the process is killed in that case.
        """
        if self.state in (SupervisorState.STARTING, SupervisorState.HEALTHY):
            return

        self.state = SupervisorState.STARTING
        try:
            await self._spawn()
        except OSError as e:
            self.state = SupervisorState.STOPPED
            raise SupervisorError(f"Failed to spawn {self.command[0]}: {e}") from e

        try:
            version = await self._wait_for_health()
        except SupervisorError:
            if self.state is SupervisorState.STARTING:
                self.state = SupervisorState.STOPPED
            await self._teardown(kill=True)
            raise

        self.state = SupervisorState.HEALTHY
        logger.info(f"signal-cli is healthy (version {version})")
        for hook in self._healthy_hooks:
            self._run_hook(hook)

    async def disconnect(self) -> None:
        """Stop signal-cli. Safe to call in any state, any number of times."""
        self.state = SupervisorState.STOPPED

        restart = self._restart_task
        self._restart_task = None
        if restart and restart is not asyncio.current_task():
            restart.cancel()

        for task in list(self._hook_tasks):
            task.cancel()
        self._hook_tasks.clear()

        await self._teardown(kill=False)
        logger.info("Signal process supervisor stopped")

    async def _spawn(self) -> None:
        logger.info(f"Spawning signal-cli: {' '.join(self.command)}")
        process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        transport = RpcTransport(
            process.stdin,
            self._on_notification,
            max_pending=self.max_pending,
            call_timeout=self.call_timeout,
            max_buffer=self.max_buffer,
        )
        self._process = process
        self.transport = transport
        self._io_tasks = [
            asyncio.create_task(self._read_stdout(process, transport)),
            asyncio.create_task(self._read_stderr(process)),
            asyncio.create_task(self._watch_exit(process)),
        ]

    async def _wait_for_health(self) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.health_timeout

        while loop.time() < deadline:
            if self.state is not SupervisorState.STARTING:
                raise SupervisorError("connect aborted")
            process = self._process
            if process is None or process.returncode is not None:
                code = process.returncode if process else None
                raise SupervisorError(f"signal-cli exited during startup (code {code})")

            remaining = max(deadline - loop.time(), 0.01)
            try:
                result = await self.call(PROBE_METHOD, {}, timeout=min(self.call_timeout, remaining))
                if result:
                    return result
            except SignalRelayError as e:
                logger.debug(f"signal-cli not ready yet: {e}")

            await asyncio.sleep(self.health_poll)

        raise SupervisorError(
            f"signal-cli failed to become healthy within {self.health_timeout}s"
        )

    async def _teardown(self, kill: bool) -> None:
        process = self._process
        self._process = None

        if self.transport:
            self.transport.close("disconnected")
            self.transport = None

        if process and process.returncode is None:
            try:
                if kill:
                    process.kill()
                else:
                    process.terminate()
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_S)
            except asyncio.TimeoutError:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            except ProcessLookupError:
                pass

        current = asyncio.current_task()
        for task in self._io_tasks:
            if task is not current:
                task.cancel()
        self._io_tasks = []

    # ------------------------------------------------------------------
    # Process I/O
    # ------------------------------------------------------------------

    async def _read_stdout(self, process: asyncio.subprocess.Process, transport: RpcTransport) -> None:
        while True:
            chunk = await process.stdout.read(_READ_CHUNK)
            if not chunk:
                return
            transport.feed(chunk)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug(f"[signal-cli] {text}")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if process is not self._process:
            return  # Already torn down deliberately

        logger.warning(f"signal-cli process exited (code {code})")
        if self.transport:
            self.transport.close("signal-cli exited")

        if self.state is SupervisorState.HEALTHY:
            self.state = SupervisorState.UNHEALTHY
            self._restart_task = asyncio.create_task(self._restart_later())

    async def _restart_later(self) -> None:
        await asyncio.sleep(self.restart_delay)
        if self.state is not SupervisorState.UNHEALTHY:
            return
        logger.info("Restarting signal-cli...")
        try:
            await self._teardown(kill=True)
            await self.connect()
        except SignalRelayError as e:
            logger.error(f"Failed to restart signal-cli: {e}")
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None

    def _run_hook(self, hook: HealthyHook) -> None:
        task = asyncio.create_task(hook())
        self._hook_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._hook_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.opt(exception=t.exception()).error("Post-connect hook failed")

        task.add_done_callback(_done)
