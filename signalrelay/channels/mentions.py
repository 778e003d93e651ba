"""Resolve Signal @mention placeholders into readable ``@name`` text."""

from typing import Any

# signal-cli puts U+FFFC in the body at each mention position
MENTION_PLACEHOLDER = "\ufffc"


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _mention_name(mention: dict, own_number: str, assistant_name: str) -> str:
    number = mention.get("number") if isinstance(mention.get("number"), str) else None
    if number and number == own_number:
        return assistant_name
    for key in ("name", "number", "uuid"):
        value = mention.get(key)
        if isinstance(value, str) and value:
            return value
    return "unknown"


def resolve_mentions(
    text: str | None,
    mentions: list[Any] | None,
    own_number: str,
    assistant_name: str,
) -> str | None:
    """Replace mention placeholders in *text*.

    Each descriptor carries ``start``/``length`` in UTF-16 code units plus the
    mentioned account's ``number``, ``uuid`` and ``name``. Descriptors are
    applied from the highest offset down so earlier offsets stay valid. A
    mention of our own number becomes ``@<assistant_name>`` so trigger
    matching works. Placeholders left over (descriptors dropped upstream) are
    swept to ``@<assistant_name>`` as well.
    """
    if not text:
        return text

    if mentions:
        valid = [
            m for m in mentions
            if isinstance(m, dict) and _as_int(m.get("start")) is not None
        ]
        encoded = text.encode("utf-16-le")
        for mention in sorted(valid, key=lambda m: m["start"], reverse=True):
            start = mention["start"]
            length = _as_int(mention.get("length")) or 1
            if start < 0 or (start + length) * 2 > len(encoded):
                continue
            name = _mention_name(mention, own_number, assistant_name)
            replacement = f"@{name}".encode("utf-16-le")
            encoded = encoded[: start * 2] + replacement + encoded[(start + length) * 2:]
        text = encoded.decode("utf-16-le", errors="replace")

    if MENTION_PLACEHOLDER in text:
        text = text.replace(MENTION_PLACEHOLDER, f"@{assistant_name}")

    return text
