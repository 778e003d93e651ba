"""Per-chat typing indicator with keepalive and a safety ceiling."""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from signalrelay.bus.events import ChatIdentity

TYPING_KEEPALIVE_S = 10.0  # Receivers drop the indicator after ~15s
TYPING_MAX_S = 120.0

RpcCall = Callable[[str, dict], Awaitable[Any]]


class TypingIndicator:
    """
    Keeps Signal's "typing..." indicator alive while the agent works.

    ``start()`` sends a typing signal now and every ``keepalive`` seconds.
    ``stop()`` cancels both timers and sends one stop signal. If nobody calls
    ``stop()``, the indicator switches itself off after ``max_duration``.
    """

    def __init__(
        self,
        call: RpcCall,
        is_healthy: Callable[[], bool],
        keepalive: float = TYPING_KEEPALIVE_S,
        max_duration: float = TYPING_MAX_S,
    ):
        self._call = call
        self._is_healthy = is_healthy
        self.keepalive = keepalive
        self.max_duration = max_duration
        self._keepalive_tasks: dict[ChatIdentity, asyncio.Task] = {}
        self._ceiling_tasks: dict[ChatIdentity, asyncio.Task] = {}

    def is_active(self, chat: ChatIdentity) -> bool:
        return chat in self._keepalive_tasks

    @property
    def active_chats(self) -> list[ChatIdentity]:
        return list(self._keepalive_tasks)

    async def set_typing(self, chat: ChatIdentity, is_typing: bool) -> None:
        if is_typing:
            self.start(chat)
        else:
            await self.stop(chat)

    def start(self, chat: ChatIdentity) -> None:
        """Switch the indicator on (no-op when already on or not connected)."""
        if chat in self._keepalive_tasks or not self._is_healthy():
            return
        self._keepalive_tasks[chat] = asyncio.create_task(self._keepalive_loop(chat))
        self._ceiling_tasks[chat] = asyncio.create_task(self._ceiling(chat))

    async def stop(self, chat: ChatIdentity) -> None:
        """Switch the indicator off and tell the receiver."""
        was_active = self._cancel_timers(chat)
        if not was_active or not self._is_healthy():
            return
        await self._send(chat, stop=True)

    async def stop_all(self) -> None:
        for chat in self.active_chats:
            await self.stop(chat)

    def cancel_all(self) -> None:
        """Drop every timer without signalling (used on disconnect)."""
        for chat in self.active_chats:
            self._cancel_timers(chat)

    def _cancel_timers(self, chat: ChatIdentity) -> bool:
        current = asyncio.current_task()
        keepalive = self._keepalive_tasks.pop(chat, None)
        ceiling = self._ceiling_tasks.pop(chat, None)
        for task in (keepalive, ceiling):
            if task and task is not current:
                task.cancel()
        return keepalive is not None

    async def _keepalive_loop(self, chat: ChatIdentity) -> None:
        """Send typing every ``keepalive`` seconds until cancelled."""
        try:
            while True:
                await self._send(chat, stop=False)
                await asyncio.sleep(self.keepalive)
        except asyncio.CancelledError:
            pass

    async def _ceiling(self, chat: ChatIdentity) -> None:
        try:
            await asyncio.sleep(self.max_duration)
        except asyncio.CancelledError:
            return
        logger.info(f"Typing indicator for {chat} hit {self.max_duration}s ceiling, stopping")
        await self.stop(chat)

    async def _send(self, chat: ChatIdentity, stop: bool) -> None:
        if not self._is_healthy():
            return
        params = chat.recipient_params()
        if stop:
            params["stop"] = True
        try:
            await self._call("sendTyping", params)
        except Exception as e:
            logger.debug(f"sendTyping for {chat} failed: {e}")
