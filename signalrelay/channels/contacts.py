"""Display names observed on inbound envelopes."""


class ContactDirectory:
    """Remembers the last display name seen for each phone number or UUID."""

    def __init__(self) -> None:
        self._names: dict[str, str] = {}

    def remember(self, name: str | None, *ids: str | None) -> None:
        if not name:
            return
        for contact_id in ids:
            if contact_id and contact_id != name:
                self._names[contact_id] = name

    def display_name(self, contact_id: str | None) -> str | None:
        if not contact_id:
            return None
        return self._names.get(contact_id)

    def __len__(self) -> int:
        return len(self._names)
