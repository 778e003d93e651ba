"""Event types exchanged between the Signal channel and the rest of the system."""

import re
from dataclasses import dataclass, field
from enum import Enum

CHANNEL_PREFIX = "signal"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class ChatKind(Enum):
    PEER = "peer"
    GROUP = "group"


@dataclass(frozen=True, eq=False)
class ChatIdentity:
    """Canonical address of a conversation: ``signal:<raw-id>``.

    ``raw_id`` is a phone number, an account UUID, or an opaque group id.
    Two identities are equal when their string forms are equal.
    """

    kind: ChatKind
    raw_id: str
    channel: str = CHANNEL_PREFIX

    @classmethod
    def peer(cls, raw_id: str) -> "ChatIdentity":
        return cls(ChatKind.PEER, raw_id)

    @classmethod
    def group(cls, raw_id: str) -> "ChatIdentity":
        return cls(ChatKind.GROUP, raw_id)

    @classmethod
    def parse(cls, value: str, channel: str = CHANNEL_PREFIX) -> "ChatIdentity":
        """Parse ``signal:<raw-id>``; the prefix is optional.

        Ids starting with ``+`` or shaped like a UUID are peers, anything
        else is treated as a group id.
        """
        raw = value
        prefix = f"{channel}:"
        if raw.startswith(prefix):
            raw = raw[len(prefix):]
        if not raw:
            raise ValueError(f"Empty chat id: {value!r}")
        kind = ChatKind.PEER if raw.startswith("+") or _UUID_RE.match(raw) else ChatKind.GROUP
        return cls(kind, raw, channel)

    @property
    def is_group(self) -> bool:
        return self.kind is ChatKind.GROUP

    def recipient_params(self) -> dict:
        """RPC params addressing this conversation."""
        if self.is_group:
            return {"groupId": self.raw_id}
        return {"recipient": [self.raw_id]}

    def __str__(self) -> str:
        return f"{self.channel}:{self.raw_id}"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ChatIdentity):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))


@dataclass(frozen=True)
class Quote:
    """The message a reply refers to."""

    author: str
    text: str  # Already truncated for display


@dataclass(frozen=True)
class Reaction:
    """An emoji reaction added to an earlier message."""

    emoji: str
    target_author: str
    target_timestamp: str  # ISO-8601, "" when unknown


@dataclass(frozen=True)
class AttachmentRef:
    """A received attachment that exists on disk."""

    content_type: str
    host_path: str
    container_path: str
    filename: str | None = None
    size: int | None = None

    @property
    def label(self) -> str:
        return self.filename or self.content_type


@dataclass(frozen=True)
class InboundEnvelope:
    """A decoded inbound message, ready for the message handler."""

    chat: ChatIdentity
    is_group: bool
    sender_id: str
    sender_name: str
    timestamp_ms: int
    content: str  # Message text plus inline quote/reaction/attachment notes
    quote: Quote | None = None
    reaction: Reaction | None = None
    attachments: tuple[AttachmentRef, ...] = ()
    is_from_me: bool = False

    @property
    def message_id(self) -> str:
        return f"{self.chat.channel}-{self.timestamp_ms}"


@dataclass(frozen=True)
class ChatMetadata:
    """Reported for every decoded message, registered chat or not."""

    chat: ChatIdentity
    timestamp: str  # ISO-8601
    name: str | None
    is_group: bool
    channel: str = CHANNEL_PREFIX


@dataclass
class QueuedOutbound:
    """A message waiting for the channel to become deliverable."""

    chat: ChatIdentity
    text: str
    attachments: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class GroupMetadataEntry:
    """Snapshot of one group's membership."""

    chat: ChatIdentity
    name: str
    description: str = ""
    members: tuple[str, ...] = ()
    admins: tuple[str, ...] = ()
