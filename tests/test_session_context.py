"""
Tests for place extraction and the session context store.
"""

import pytest

from chatkeep.memory.errors import MalformedStoredData
from chatkeep.memory.session_context import (
    LAST_CITY,
    SESSION_CONTEXT_KEY,
    SessionContextStore,
    extract_place,
    parse_context,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("What's the weather in St. Louis, MO today?", "St. Louis, MO"),
        ("any good food for Kansas City, KS", "Kansas City, KS"),
        ("meet me at Springfield", "Springfield"),
        ("tell me about that city", None),
        ("what is the weather in that city", None),
        ("How about THIS CITY then", None),
        ("hello there", None),
        ("", None),
    ],
)
def test_extract_place(text, expected):
    assert extract_place(text) == expected


class TestSessionContextStore:
    def test_update_sets_last_city(self, kv):
        ctx = SessionContextStore(kv)
        assert ctx.update("What's the weather in St. Louis, MO today?") == "St. Louis, MO"
        assert ctx.get(LAST_CITY) == "St. Louis, MO"

    def test_pronoun_reference_leaves_value(self, kv):
        ctx = SessionContextStore(kv)
        ctx.update("What's the weather in St. Louis, MO today?")
        assert ctx.update("tell me about that city") is None
        assert ctx.get(LAST_CITY) == "St. Louis, MO"

    def test_last_write_wins(self, kv):
        ctx = SessionContextStore(kv)
        ctx.update("flights in Denver, CO")
        ctx.update("hotels in Austin, TX")
        assert ctx.get(LAST_CITY) == "Austin, TX"

    def test_persisted_across_instances(self, kv):
        SessionContextStore(kv).update("weather in Boise, ID")
        assert SessionContextStore(kv).get(LAST_CITY) == "Boise, ID"

    def test_unreadable_stored_context(self, kv):
        kv.set_item(SESSION_CONTEXT_KEY, "[1, 2")
        ctx = SessionContextStore(kv)
        assert ctx.as_dict() == {}
        assert ctx.get(LAST_CITY) is None

    def test_non_object_stored_context(self, kv):
        kv.set_item(SESSION_CONTEXT_KEY, "[1, 2]")
        assert SessionContextStore(kv).as_dict() == {}


@pytest.mark.parametrize("raw", ["{bad", "[1, 2]", '"text"'])
def test_parse_context_rejects_non_objects(raw):
    with pytest.raises(MalformedStoredData):
        parse_context(raw)


def test_parse_context_keeps_string_facts():
    assert parse_context('{"last_city": "Reno, NV", "n": 3}') == {"last_city": "Reno, NV"}
    assert parse_context(None) == {}
