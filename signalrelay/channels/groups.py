"""Read-through cache of Signal group membership."""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from signalrelay.bus.events import ChatIdentity, GroupMetadataEntry
from signalrelay.channels.contacts import ContactDirectory

GROUP_REFRESH_INTERVAL_S = 3600.0

RpcCall = Callable[[str, dict], Awaitable[Any]]


class GroupMetadataCache:
    """
    Snapshot of every group the account belongs to.

    Each ``refresh()`` fetches the full list with one ``listGroups`` call and
    swaps in a new dict, so readers always see one complete snapshot.
    """

    def __init__(
        self,
        call: RpcCall,
        contacts: ContactDirectory | None = None,
        interval_s: float = GROUP_REFRESH_INTERVAL_S,
    ):
        self._call = call
        self.contacts = contacts or ContactDirectory()
        self.interval_s = interval_s
        self._entries: dict[ChatIdentity, GroupMetadataEntry] = {}
        self._task: asyncio.Task | None = None

    def get(self, chat: ChatIdentity | str) -> GroupMetadataEntry | None:
        if isinstance(chat, str):
            chat = ChatIdentity.parse(chat)
        return self._entries.get(chat)

    def snapshot(self) -> dict[ChatIdentity, GroupMetadataEntry]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def refresh(self) -> int:
        """Replace the cache with a fresh ``listGroups`` result. Returns group count."""
        result = await self._call("listGroups", {})
        entries: dict[ChatIdentity, GroupMetadataEntry] = {}
        for raw in result if isinstance(result, list) else []:
            entry = self._parse_group(raw)
            if entry:
                entries[entry.chat] = entry
        self._entries = entries
        logger.debug(f"Group metadata refreshed: {len(entries)} groups")
        return len(entries)

    def _parse_group(self, raw: Any) -> GroupMetadataEntry | None:
        if not isinstance(raw, dict):
            return None
        group_id = raw.get("id")
        if not isinstance(group_id, str) or not group_id:
            return None
        name = raw.get("name")
        description = raw.get("description")
        return GroupMetadataEntry(
            chat=ChatIdentity.group(group_id),
            name=name if isinstance(name, str) else "",
            description=description if isinstance(description, str) else "",
            members=tuple(self.member_name(m) for m in _as_list(raw.get("members"))),
            admins=tuple(self.member_name(m) for m in _as_list(raw.get("admins"))),
        )

    def member_name(self, member: Any) -> str:
        """Phone number if known, else a display name seen for the UUID, else "unknown"."""
        if isinstance(member, str):
            number, uuid = (member, None) if member.startswith("+") else (None, member)
        elif isinstance(member, dict):
            number = member.get("number") if isinstance(member.get("number"), str) else None
            uuid = member.get("uuid") if isinstance(member.get("uuid"), str) else None
        else:
            return "unknown"
        return number or self.contacts.display_name(uuid) or "unknown"

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    def start(self, is_connected: Callable[[], bool]) -> None:
        if self._task is None and self.interval_s > 0:
            self._task = asyncio.create_task(self._run_loop(is_connected))

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self, is_connected: Callable[[], bool]) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_s)
                if is_connected():
                    await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Group metadata refresh failed: {e}")


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []
