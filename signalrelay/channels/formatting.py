"""Inline marker parsing for Signal text styles.

Signal has no markup in message bodies. Styling travels beside the text as
ranges measured in UTF-16 code units, so markers such as ``*bold*`` are
stripped and turned into :class:`StyledSpan` entries over the stripped text.
"""

import re
from dataclasses import dataclass
from enum import Enum


class StyleKind(str, Enum):
    BOLD = "BOLD"
    ITALIC = "ITALIC"
    MONOSPACE = "MONOSPACE"
    STRIKETHROUGH = "STRIKETHROUGH"
    SPOILER = "SPOILER"


@dataclass(frozen=True)
class StyledSpan:
    style: StyleKind
    start: int  # UTF-16 code units into the stripped text
    length: int  # UTF-16 code units

    def to_param(self) -> str:
        """Render as signal-cli's ``start:length:STYLE`` form."""
        return f"{self.start}:{self.length}:{self.style.value}"


@dataclass(frozen=True)
class StyledText:
    text: str
    spans: list[StyledSpan]


# Precedence order: earlier patterns claim indices first.
_PATTERNS: list[tuple[re.Pattern, StyleKind, int]] = [
    (re.compile(r"`([^`]+)`"), StyleKind.MONOSPACE, 1),
    (re.compile(r"\|\|([^|]+)\|\|"), StyleKind.SPOILER, 2),
    (re.compile(r"~~([^~]+)~~"), StyleKind.STRIKETHROUGH, 2),
    (re.compile(r"(?<!~)~(?!~)([^~]+?)(?<!~)~(?!~)"), StyleKind.STRIKETHROUGH, 1),
    # Single asterisks only; **double** is left alone
    (re.compile(r"(?<!\*)\*(?!\*)([^*]+?)(?<!\*)\*(?!\*)"), StyleKind.BOLD, 1),
    # Not inside snake_case identifiers
    (re.compile(r"(?<!\w)_([^_]+?)_(?!\w)"), StyleKind.ITALIC, 1),
]


@dataclass(frozen=True)
class _Match:
    open_end: int
    close_start: int
    style: StyleKind


def _utf16_len(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def parse_styles(text: str) -> StyledText:
    """Strip inline markers from *text* and compute UTF-16 style spans.

    Supported: ``*bold*``, ``_italic_``, ```code```, ``~strike~``,
    ``~~strike~~`` and ``||spoiler||``. Code spans protect their content from
    every other pattern. Unmatched markers stay as literal text.
    """
    if not text:
        return StyledText(text=text, spans=[])

    markers: set[int] = set()  # indices stripped from the output
    protected: set[int] = set()  # code span content
    matches: list[_Match] = []

    for pattern, style, marker_len in _PATTERNS:
        for m in pattern.finditer(text):
            open_start, close_end = m.start(), m.end()
            open_end = open_start + marker_len
            close_start = close_end - marker_len

            if any(i in markers or i in protected for i in range(open_start, close_end)):
                continue

            markers.update(range(open_start, open_end))
            markers.update(range(close_start, close_end))
            if style is StyleKind.MONOSPACE:
                protected.update(range(open_end, close_start))

            matches.append(_Match(open_end, close_start, style))

    if not matches:
        return StyledText(text=text, spans=[])

    # index_map[i] = UTF-16 offset of text[i] in the output, or -1 if stripped
    index_map: list[int] = []
    out: list[str] = []
    offset = 0
    for i, ch in enumerate(text):
        if i in markers:
            index_map.append(-1)
            continue
        index_map.append(offset)
        out.append(ch)
        offset += _utf16_len(ch)

    spans: list[StyledSpan] = []
    for m in matches:
        start = index_map[m.open_end]
        last = m.close_start - 1
        while last >= m.open_end and index_map[last] == -1:
            last -= 1
        if start == -1 or last < m.open_end:
            continue
        end = index_map[last] + _utf16_len(text[last])
        if end > start:
            spans.append(StyledSpan(style=m.style, start=start, length=end - start))

    spans.sort(key=lambda s: s.start)
    return StyledText(text="".join(out), spans=spans)
