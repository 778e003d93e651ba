"""Decoding of signal-cli ``receive`` notifications into InboundEnvelopes.

signal-cli reports two shapes we care about: a ``dataMessage`` received from
someone else, and a ``syncMessage.sentMessage`` echoing what our own account
sent from another linked device. Both are parsed into explicit variants here,
with every field validated and defaulted at this boundary, then normalized
into a single :class:`InboundEnvelope`.
"""

import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from signalrelay.bus.events import (
    CHANNEL_PREFIX,
    AttachmentRef,
    ChatIdentity,
    ChatMetadata,
    InboundEnvelope,
    Quote,
    Reaction,
)
from signalrelay.channels.contacts import ContactDirectory
from signalrelay.channels.mentions import resolve_mentions
from signalrelay.media.attachments import container_path_for, find_attachment_file
from signalrelay.media.images import ImageOptimizer
from signalrelay.providers.transcription import TranscriptionError, TranscriptionProvider

MessageCallback = Callable[[InboundEnvelope], Awaitable[None]]
MetadataCallback = Callable[[ChatMetadata], Awaitable[None] | None]
ReplyCallback = Callable[[ChatIdentity, str], Awaitable[Any]]

DEFAULT_CONTENT_TYPE = "application/octet-stream"


# ----------------------------------------------------------------------
# Boundary helpers: wrong types degrade to "absent"
# ----------------------------------------------------------------------

def _str(data: dict, *keys: str) -> str | None:
    """First non-empty string among *keys*."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _dict(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _list(data: dict, key: str) -> list:
    value = data.get(key)
    return value if isinstance(value, list) else []


def _iso(timestamp_ms: int | None) -> str:
    if timestamp_ms is None:
        return ""
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return ""


# ----------------------------------------------------------------------
# Wire variants
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RawAttachment:
    id: str
    content_type: str
    filename: str | None = None
    size: int | None = None

    @classmethod
    def parse(cls, raw: Any) -> "RawAttachment | None":
        if not isinstance(raw, dict):
            return None
        att_id = _str(raw, "id")
        if not att_id:
            return None
        return cls(
            id=att_id,
            content_type=_str(raw, "contentType") or DEFAULT_CONTENT_TYPE,
            filename=_str(raw, "filename"),
            size=_int(raw, "size"),
        )


@dataclass(frozen=True)
class RawQuote:
    author_number: str | None
    author_id: str | None  # UUID or legacy author field
    text: str

    @classmethod
    def parse(cls, raw: Any) -> "RawQuote | None":
        if not isinstance(raw, dict) or not raw:
            return None
        return cls(
            author_number=_str(raw, "authorNumber"),
            author_id=_str(raw, "authorUuid", "author"),
            text=_str(raw, "text") or "",
        )


@dataclass(frozen=True)
class RawReaction:
    emoji: str
    is_remove: bool
    target_author: str
    target_timestamp: int | None

    @classmethod
    def parse(cls, raw: Any) -> "RawReaction | None":
        if not isinstance(raw, dict):
            return None
        emoji = _str(raw, "emoji")
        if not emoji:
            return None
        return cls(
            emoji=emoji,
            is_remove=raw.get("isRemove") is True,
            target_author=_str(raw, "targetAuthorNumber", "targetAuthorUuid", "targetAuthor") or "unknown",
            target_timestamp=_int(raw, "targetSentTimestamp"),
        )


@dataclass(frozen=True)
class MessageBody:
    """Fields shared by ``dataMessage`` and ``sentMessage``."""

    text: str | None
    mentions: list
    timestamp: int | None
    group_id: str | None
    group_name: str | None
    attachments: list[RawAttachment]
    quote: RawQuote | None
    reaction: RawReaction | None

    @classmethod
    def parse(cls, raw: dict) -> "MessageBody":
        group = _dict(raw, "groupInfo")
        attachments = [a for a in map(RawAttachment.parse, _list(raw, "attachments")) if a]
        return cls(
            text=_str(raw, "message"),
            mentions=_list(raw, "mentions"),
            timestamp=_int(raw, "timestamp"),
            group_id=_str(group, "groupId"),
            group_name=_str(group, "groupName"),
            attachments=attachments,
            quote=RawQuote.parse(raw.get("quote")),
            reaction=RawReaction.parse(raw.get("reaction")),
        )


@dataclass(frozen=True)
class DirectMessage:
    """A message someone else sent us (``dataMessage``)."""

    source_number: str | None
    source_uuid: str | None
    source_name: str | None
    timestamp: int | None
    body: MessageBody

    @property
    def source_id(self) -> str | None:
        return self.source_number or self.source_uuid

    @property
    def peer_id(self) -> str | None:
        return self.source_id


@dataclass(frozen=True)
class SyncedSentMessage:
    """A message our account sent from another device (``syncMessage.sentMessage``)."""

    source_number: str | None
    source_uuid: str | None
    source_name: str | None
    destination_number: str | None
    destination_uuid: str | None
    timestamp: int | None
    body: MessageBody

    @property
    def source_id(self) -> str | None:
        return self.source_number or self.source_uuid

    @property
    def peer_id(self) -> str | None:
        # The conversation is the destination, not the apparent source
        return self.destination_number or self.destination_uuid or self.source_id


Envelope = DirectMessage | SyncedSentMessage


def parse_envelope(raw: Any) -> Envelope | None:
    """Parse a raw ``envelope`` object, or None if it carries no message."""
    if not isinstance(raw, dict):
        return None

    source_number = _str(raw, "sourceNumber")
    source_uuid = _str(raw, "sourceUuid", "source")
    source_name = _str(raw, "sourceName")
    timestamp = _int(raw, "timestamp")

    data_message = raw.get("dataMessage")
    if isinstance(data_message, dict):
        body = MessageBody.parse(data_message)
        return DirectMessage(
            source_number=source_number,
            source_uuid=source_uuid,
            source_name=source_name,
            timestamp=body.timestamp or timestamp,
            body=body,
        )

    sent = _dict(_dict(raw, "syncMessage"), "sentMessage")
    if sent:
        body = MessageBody.parse(sent)
        return SyncedSentMessage(
            source_number=source_number,
            source_uuid=source_uuid,
            source_name=source_name,
            destination_number=_str(sent, "destinationNumber"),
            destination_uuid=_str(sent, "destinationUuid", "destination"),
            timestamp=body.timestamp or timestamp,
            body=body,
        )

    return None


# ----------------------------------------------------------------------
# Decoder
# ----------------------------------------------------------------------

class EnvelopeDecoder:
    """Turns ``receive`` notifications into envelopes for the message handler.

    Every decoded message is reported to ``on_chat_metadata`` so new chats can
    be discovered; only chats accepted by ``is_registered`` are forwarded to
    ``on_message``. Nothing here raises to the caller.
    """

    def __init__(
        self,
        *,
        account: str,
        assistant_name: str,
        on_message: MessageCallback,
        on_chat_metadata: MetadataCallback,
        is_registered: Callable[[ChatIdentity], bool],
        send_reply: ReplyCallback,
        attachments_dir: Path,
        container_dir: str = "/workspace/signal-attachments",
        contacts: ContactDirectory | None = None,
        transcriber: TranscriptionProvider | None = None,
        image_optimizer: ImageOptimizer | None = None,
        discovery_command: str = "/chatid",
        quote_max_chars: int = 100,
        channel: str = CHANNEL_PREFIX,
    ):
        self.account = account
        self.assistant_name = assistant_name
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._is_registered = is_registered
        self._send_reply = send_reply
        self.attachments_dir = attachments_dir
        self.container_dir = container_dir
        self.contacts = contacts or ContactDirectory()
        self._transcriber = transcriber
        self._image_optimizer = image_optimizer
        self.discovery_command = discovery_command.strip().casefold()
        self.quote_max_chars = quote_max_chars
        self.channel = channel

    async def handle_notification(self, method: str, params: dict) -> None:
        """Transport notification entry point."""
        if method != "receive":
            return
        envelope = _dict(params, "envelope")
        if envelope:
            await self.handle_envelope(envelope)

    async def handle_envelope(self, raw: Any) -> InboundEnvelope | None:
        """Decode one envelope and dispatch it. Returns what was forwarded."""
        try:
            return await self._handle(raw)
        except Exception:
            logger.exception("Failed to decode Signal envelope")
            return None

    async def _handle(self, raw: Any) -> InboundEnvelope | None:
        envelope = parse_envelope(raw)
        if envelope is None:
            return None

        body = envelope.body
        if body.group_id:
            chat = ChatIdentity.group(body.group_id)
        elif envelope.peer_id:
            chat = ChatIdentity.peer(envelope.peer_id)
        else:
            return None

        is_from_me = isinstance(envelope, SyncedSentMessage)
        if not is_from_me:
            self.contacts.remember(envelope.source_name, envelope.source_number, envelope.source_uuid)

        text = resolve_mentions(body.text, body.mentions, self.account, self.assistant_name)

        if text and text.strip().casefold() == self.discovery_command:
            await self._reply_chat_id(chat)
            return None

        timestamp_ms = envelope.timestamp or int(time.time() * 1000)
        timestamp = _iso(timestamp_ms)
        if not timestamp:
            # Out-of-range timestamp
            timestamp_ms = int(time.time() * 1000)
            timestamp = _iso(timestamp_ms)
        if chat.is_group:
            name = body.group_name
        else:
            name = None if is_from_me else envelope.source_name
        await self._report_metadata(ChatMetadata(
            chat=chat,
            timestamp=timestamp,
            name=name,
            is_group=chat.is_group,
            channel=self.channel,
        ))

        if not self._is_registered(chat):
            return None

        attachments, voice_notes = await self._build_attachments(body.attachments)
        quote = self._build_quote(body.quote)
        reaction = self._build_reaction(body.reaction)

        content = self._render_content(text, voice_notes, quote, reaction, attachments)
        if not content.strip():
            return None

        sender_id = envelope.source_id or ""
        inbound = InboundEnvelope(
            chat=chat,
            is_group=chat.is_group,
            sender_id=sender_id,
            sender_name=envelope.source_name or sender_id or "Unknown",
            timestamp_ms=timestamp_ms,
            content=content,
            quote=quote,
            reaction=reaction,
            attachments=tuple(attachments),
            is_from_me=is_from_me,
        )
        logger.debug(f"Signal message in {chat} from {inbound.sender_name}: {content[:50]}")
        await self._on_message(inbound)
        return inbound

    async def _reply_chat_id(self, chat: ChatIdentity) -> None:
        try:
            await self._send_reply(chat, f"Chat ID: {chat}")
            logger.info(f"{self.discovery_command} response sent to {chat}")
        except Exception as e:
            logger.warning(f"Failed to send {self.discovery_command} response to {chat}: {e}")

    async def _report_metadata(self, metadata: ChatMetadata) -> None:
        try:
            result = self._on_chat_metadata(metadata)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Chat metadata callback failed for {metadata.chat}")

    # ------------------------------------------------------------------
    # Field builders
    # ------------------------------------------------------------------

    async def _build_attachments(
        self, raw_attachments: list[RawAttachment]
    ) -> tuple[list[AttachmentRef], list[str]]:
        """Resolve attachments on disk; transcribe audio, optimize images."""
        attachments: list[AttachmentRef] = []
        voice_notes: list[str] = []

        for raw in raw_attachments:
            path = find_attachment_file(self.attachments_dir, raw.id)
            if path is None:
                logger.debug(f"Attachment {raw.id} not found in {self.attachments_dir}, dropping")
                continue

            if raw.content_type.startswith("audio/") and self._transcriber:
                transcript = await self._transcribe(path)
                if transcript:
                    voice_notes.append(transcript)
                    continue

            if raw.content_type.startswith("image/") and self._image_optimizer:
                optimized = await self._optimize(path)
                if optimized != path and optimized.is_file():
                    attachments.append(AttachmentRef(
                        content_type="image/jpeg",
                        host_path=str(optimized),
                        container_path=container_path_for(self.container_dir, optimized.name),
                        filename=raw.filename or path.name,
                        size=optimized.stat().st_size,
                    ))
                    continue

            attachments.append(AttachmentRef(
                content_type=raw.content_type,
                host_path=str(path),
                container_path=container_path_for(self.container_dir, path.name),
                filename=raw.filename or path.name,
                size=raw.size,
            ))

        return attachments, voice_notes

    async def _transcribe(self, path: Path) -> str | None:
        try:
            text = await self._transcriber.transcribe(path)
        except TranscriptionError as e:
            logger.warning(f"Transcription failed, forwarding audio as attachment: {e.detail or e.short_message}")
            return None
        except Exception as e:
            logger.warning(f"Transcription error, forwarding audio as attachment: {e}")
            return None
        logger.info(f"Transcribed voice message: {text[:50]}")
        return text

    async def _optimize(self, path: Path) -> Path:
        try:
            return await self._image_optimizer.optimize(path)
        except Exception as e:
            logger.warning(f"Image optimization failed for {path.name}, using original: {e}")
            return path

    def _author_name(self, number: str | None, other_id: str | None) -> str:
        for contact_id in (number, other_id):
            name = self.contacts.display_name(contact_id)
            if name:
                return name
        return number or other_id or "unknown"

    def _build_quote(self, raw: RawQuote | None) -> Quote | None:
        if raw is None:
            return None
        text = raw.text
        if len(text) > self.quote_max_chars:
            text = text[: self.quote_max_chars] + "..."
        return Quote(author=self._author_name(raw.author_number, raw.author_id), text=text)

    def _build_reaction(self, raw: RawReaction | None) -> Reaction | None:
        if raw is None or raw.is_remove:
            return None
        return Reaction(
            emoji=raw.emoji,
            target_author=raw.target_author,
            target_timestamp=_iso(raw.target_timestamp),
        )

    def _render_content(
        self,
        text: str | None,
        voice_notes: list[str],
        quote: Quote | None,
        reaction: Reaction | None,
        attachments: list[AttachmentRef],
    ) -> str:
        """Inline everything into the text the agent reads; message text first."""
        parts: list[str] = []
        if text:
            parts.append(text)

        trigger = f"@{self.assistant_name}"
        for note in voice_notes:
            line = f"[Voice message transcription: {note}]"
            # Voice-only messages still need the trigger for group routing
            if not any(trigger.casefold() in p.casefold() for p in parts):
                line = f"{trigger} {line}"
            parts.append(line)

        if quote:
            parts.append(f"[replying to {quote.author}: {quote.text}]")
        if reaction:
            parts.append(f"[reacted {reaction.emoji} to message from {reaction.target_author}]")
        for att in attachments:
            parts.append(f"[attachment: {att.label} → {att.container_path}]")

        return "\n".join(parts)
