"""Tests for mention placeholder resolution."""

from signalrelay.channels.mentions import MENTION_PLACEHOLDER as P
from signalrelay.channels.mentions import resolve_mentions

OWN = "+15550000000"
NAME = "Echo"


def _resolve(text, mentions):
    return resolve_mentions(text, mentions, OWN, NAME)


class TestResolveMentions:
    def test_no_text(self):
        assert _resolve(None, [{"start": 0}]) is None
        assert _resolve("", [{"start": 0}]) == ""

    def test_no_mentions_leaves_text(self):
        assert _resolve("hello", None) == "hello"

    def test_named_mention(self):
        text = f"hi {P} there"
        mentions = [{"start": 3, "length": 1, "name": "Alice", "number": "+1555111"}]
        assert _resolve(text, mentions) == "hi @Alice there"

    def test_own_number_maps_to_assistant(self):
        text = f"{P} what's up"
        mentions = [{"start": 0, "length": 1, "number": OWN, "name": "Me"}]
        assert _resolve(text, mentions) == "@Echo what's up"

    def test_multiple_mentions_in_any_order(self):
        text = f"{P} and {P} and {P}"
        mentions = [
            {"start": 0, "length": 1, "name": "A"},
            {"start": 12, "length": 1, "name": "C"},
            {"start": 6, "length": 1, "name": "B"},
        ]
        assert _resolve(text, mentions) == "@A and @B and @C"

    def test_falls_back_to_number_then_uuid(self):
        text = f"{P} {P}"
        mentions = [
            {"start": 0, "length": 1, "number": "+1555222"},
            {"start": 2, "length": 1, "uuid": "abc-uuid"},
        ]
        assert _resolve(text, mentions) == "@+1555222 @abc-uuid"

    def test_offsets_are_utf16(self):
        # The emoji takes two code units, so the mention starts at 3
        text = f"\U0001F44B {P}!"
        mentions = [{"start": 3, "length": 1, "name": "Bob"}]
        assert _resolve(text, mentions) == "\U0001F44B @Bob!"

    def test_leftover_placeholder_swept_to_assistant(self):
        assert _resolve(f"{P} ping", []) == "@Echo ping"
        assert _resolve(f"{P} ping", None) == "@Echo ping"

    def test_malformed_descriptors_ignored(self):
        text = f"hey {P}"
        mentions = ["junk", {"start": "4"}, {"start": 99, "name": "X"}]
        assert _resolve(text, mentions) == "hey @Echo"
