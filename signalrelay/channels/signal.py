"""Signal channel built on signal-cli's JSON-RPC mode."""

from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from signalrelay.bus.events import ChatIdentity, GroupMetadataEntry, QueuedOutbound
from signalrelay.channels.base import BaseChannel
from signalrelay.channels.contacts import ContactDirectory
from signalrelay.channels.decoder import EnvelopeDecoder, MessageCallback, MetadataCallback
from signalrelay.channels.formatting import parse_styles
from signalrelay.channels.groups import GroupMetadataCache
from signalrelay.channels.outbox import OutboundQueue
from signalrelay.channels.typing_indicator import TypingIndicator
from signalrelay.config.schema import Config, SignalConfig
from signalrelay.media.images import ImageOptimizer
from signalrelay.providers.transcription import TranscriptionProvider, create_transcription_provider
from signalrelay.rpc.errors import SignalRelayError
from signalrelay.rpc.supervisor import ProcessSupervisor


class SignalChannel(BaseChannel):
    """
    Signal channel using a long-lived ``signal-cli jsonRpc`` subprocess.

    Inbound messages are decoded and handed to ``on_message``; outbound
    messages are styled and sent, or queued while signal-cli is down and
    flushed once it is healthy again.
    """

    name = "signal"

    def __init__(
        self,
        config: SignalConfig,
        on_message: MessageCallback,
        on_chat_metadata: MetadataCallback,
        registered_chats: Callable[[], Iterable[str]],
        transcription_provider: TranscriptionProvider | None = None,
        image_optimizer: ImageOptimizer | None = None,
        supervisor: ProcessSupervisor | None = None,
    ):
        self.config = config
        self._registered_chats = registered_chats
        self.contacts = ContactDirectory()

        self.decoder = EnvelopeDecoder(
            account=config.account,
            assistant_name=config.assistant_name,
            on_message=on_message,
            on_chat_metadata=on_chat_metadata,
            is_registered=self.is_registered,
            send_reply=self._rpc_send,
            attachments_dir=config.attachments_path,
            container_dir=config.container_attachments_dir,
            contacts=self.contacts,
            transcriber=transcription_provider,
            image_optimizer=image_optimizer,
            discovery_command=config.discovery_command,
            quote_max_chars=config.quote_max_chars,
            channel=self.name,
        )
        self.supervisor = supervisor or ProcessSupervisor(
            config.command(),
            self.decoder.handle_notification,
            health_timeout=config.health_timeout_s,
            health_poll=config.health_poll_s,
            restart_delay=config.restart_delay_s,
            call_timeout=config.call_timeout_s,
            max_pending=config.max_pending_calls,
            max_buffer=config.max_buffer_bytes,
        )
        self.outbox = OutboundQueue(config.max_outgoing_queue)
        self.typing = TypingIndicator(
            self._call,
            self.is_connected,
            keepalive=config.typing_keepalive_s,
            max_duration=config.typing_max_s,
        )
        self.groups = GroupMetadataCache(
            self._call, self.contacts, interval_s=config.group_refresh_interval_s,
        )

        self.supervisor.add_healthy_hook(self._flush_outbox)
        self.supervisor.add_healthy_hook(self._refresh_groups)

    @classmethod
    def from_config(
        cls,
        config: Config,
        on_message: MessageCallback,
        on_chat_metadata: MetadataCallback,
        registered_chats: Callable[[], Iterable[str]],
    ) -> "SignalChannel":
        """Build the channel with the configured transcription and image handling."""
        optimizer = None
        if config.media.optimize_images:
            optimizer = ImageOptimizer(
                max_edge=config.media.max_image_edge,
                ffmpeg_path=config.media.ffmpeg_path,
                ffprobe_path=config.media.ffprobe_path,
                timeout=config.media.timeout_s,
            )
        return cls(
            config.signal,
            on_message=on_message,
            on_chat_metadata=on_chat_metadata,
            registered_chats=registered_chats,
            transcription_provider=create_transcription_provider(config.transcription),
            image_optimizer=optimizer,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if not self.config.account:
            raise ValueError("Signal account number not configured")
        await self.supervisor.connect()
        self.groups.start(self.is_connected)
        logger.info(f"Connected to Signal as {self.config.account}")

    async def disconnect(self) -> None:
        self.typing.cancel_all()
        self.groups.stop()
        await self.supervisor.disconnect()
        logger.info("Signal channel disconnected")

    def is_connected(self) -> bool:
        return self.supervisor.is_healthy

    def is_registered(self, chat: ChatIdentity) -> bool:
        key = str(chat)
        return key in self.config.allow_from or key in set(self._registered_chats())

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, chat_id: str, text: str, attachments: list[str] | None = None) -> None:
        item = QueuedOutbound(chat=ChatIdentity.parse(chat_id), text=text, attachments=list(attachments or []))
        if not self.is_connected():
            self.outbox.enqueue(item)
            logger.info(f"Signal disconnected, message for {item.chat} queued ({len(self.outbox)} queued)")
            return
        if self.outbox.flushing or len(self.outbox):
            # Older messages go first
            self.outbox.enqueue(item)
            if not self.outbox.flushing:
                await self._flush_outbox()
            return
        await self._deliver(item)

    async def set_typing(self, chat_id: str, is_typing: bool) -> None:
        await self.typing.set_typing(ChatIdentity.parse(chat_id), is_typing)

    def group_metadata(self, chat_id: str) -> GroupMetadataEntry | None:
        return self.groups.get(chat_id)

    async def _deliver(self, item: QueuedOutbound) -> bool:
        """Send one message; on failure it goes back on the queue."""
        try:
            await self._rpc_send(item.chat, item.text, item.attachments)
        except SignalRelayError as e:
            self.outbox.enqueue(item)
            logger.warning(f"Failed to send Signal message to {item.chat}, queued: {e}")
            return False
        logger.info(f"Signal message sent to {item.chat} ({len(item.text)} chars)")
        return True

    async def _rpc_send(self, chat: ChatIdentity, text: str, attachments: list[str] | None = None) -> Any:
        styled = parse_styles(text)
        params: dict[str, Any] = {"message": styled.text, **chat.recipient_params()}
        if styled.spans:
            params["textStyle"] = [span.to_param() for span in styled.spans]
        if attachments:
            params["attachments"] = list(attachments)
        return await self._call("send", params)

    def _call(self, method: str, params: dict) -> Awaitable[Any]:
        return self.supervisor.call(method, params)

    # ------------------------------------------------------------------
    # Post-connect hooks
    # ------------------------------------------------------------------

    async def _flush_outbox(self) -> None:
        total = 0
        while True:
            sent = await self.outbox.flush(self._deliver, self.is_connected)
            total += sent
            # Messages queued during a pass are picked up by the next one
            if not sent or not len(self.outbox) or not self.is_connected():
                break
        if total:
            logger.info(f"Flushed {total} queued Signal message(s)")

    async def _refresh_groups(self) -> None:
        try:
            count = await self.groups.refresh()
            logger.info(f"Loaded metadata for {count} Signal group(s)")
        except SignalRelayError as e:
            logger.warning(f"Group metadata refresh failed: {e}")
