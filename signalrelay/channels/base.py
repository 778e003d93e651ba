"""Base interface for chat channels."""

from abc import ABC, abstractmethod


class BaseChannel(ABC):
    """A chat transport the dispatcher can send through and receive from."""

    name: str = "base"

    @abstractmethod
    async def connect(self) -> None:
        """Bring the channel up; raises if it cannot."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear the channel down. Idempotent."""

    @abstractmethod
    async def send_message(self, chat_id: str, text: str, attachments: list[str] | None = None) -> None:
        """Deliver *text* to *chat_id*, queueing it if delivery is not possible now."""

    @abstractmethod
    async def set_typing(self, chat_id: str, is_typing: bool) -> None:
        """Show or hide the typing indicator in *chat_id*."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether messages can be sent right now."""

    def owns_chat(self, chat_id: str) -> bool:
        """Whether *chat_id* addresses a conversation on this channel."""
        return chat_id.startswith(f"{self.name}:")
