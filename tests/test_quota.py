"""
Tests for QuotaCounter: daily limit, lazy rollover and tolerant reads.
"""

import json

import pytest

from chatkeep.memory.conversation_store import CONVERSATIONS_KEY
from chatkeep.memory.errors import MalformedStoredData
from chatkeep.memory.quota import DAILY_LIMIT, QUOTA_KEY, QuotaCounter, parse_quota_record
from chatkeep.memory.storage import InMemoryKeyValueMedium


class TestQuotaCounter:
    def test_fresh_counter_allows_consumption(self, kv, clock):
        quota = QuotaCounter(kv, clock=clock)
        assert quota.can_consume()
        assert quota.remaining() == DAILY_LIMIT
        assert quota.current().date == "2024-05-01"

    def test_limit_reached_after_ten(self, kv, clock):
        quota = QuotaCounter(kv, clock=clock)
        for _ in range(DAILY_LIMIT):
            assert quota.can_consume()
            quota.consume()
        assert not quota.can_consume()
        assert quota.remaining() == 0
        assert json.loads(kv.get_item(QUOTA_KEY)) == {"date": "2024-05-01", "count": 10}

    def test_rollover_on_next_day_without_reset_call(self, kv, clock):
        kv.set_item(QUOTA_KEY, json.dumps({"date": "2024-05-01", "count": 10}))
        quota = QuotaCounter(kv, clock=clock)
        assert not quota.can_consume()

        clock.advance(days=1)
        assert quota.can_consume()
        assert quota.current().count == 0
        assert json.loads(kv.get_item(QUOTA_KEY)) == {"date": "2024-05-02", "count": 0}

    def test_record_is_superseded_not_merged(self, kv, clock):
        kv.set_item(QUOTA_KEY, json.dumps({"date": "2024-04-30", "count": 7}))
        quota = QuotaCounter(kv, clock=clock)
        record = quota.consume()
        assert record.date == "2024-05-01"
        assert record.count == 1

    def test_consume_has_no_rollback(self, kv, clock):
        quota = QuotaCounter(kv, limit=1, clock=clock)
        quota.consume()
        assert not quota.can_consume()
        # a second consume is still charged
        assert quota.consume().count == 2

    def test_malformed_record_treated_as_absent(self, kv, clock):
        kv.set_item(QUOTA_KEY, "not json at all")
        quota = QuotaCounter(kv, clock=clock)
        assert quota.can_consume()
        assert quota.current().count == 0

    def test_bad_count_treated_as_absent(self, kv, clock):
        kv.set_item(QUOTA_KEY, json.dumps({"date": "2024-05-01", "count": "lots"}))
        assert QuotaCounter(kv, clock=clock).current().count == 0

    def test_custom_limit(self, kv, clock):
        quota = QuotaCounter(kv, limit=2, clock=clock)
        quota.consume()
        quota.consume()
        assert not quota.can_consume()


class TestFullMedium:
    def test_full_medium_still_enforces_limit(self, clock):
        kv = InMemoryKeyValueMedium(capacity=200)
        kv.set_item(CONVERSATIONS_KEY, "x" * (200 - len(CONVERSATIONS_KEY)))
        quota = QuotaCounter(kv, clock=clock)

        allowed = 0
        for _ in range(25):
            if quota.can_consume():
                quota.consume()
                allowed += 1

        assert allowed == DAILY_LIMIT
        assert kv.get_item(QUOTA_KEY) is None
        assert quota.current().count == DAILY_LIMIT
        assert quota.remaining() == 0

    def test_refused_final_write_still_closes_quota(self, clock):
        kv = InMemoryKeyValueMedium()
        quota = QuotaCounter(kv, clock=clock)
        for _ in range(DAILY_LIMIT - 1):
            quota.consume()
        # the 9 -> 10 record is one byte longer than the medium can take
        kv.capacity = kv.used()

        quota.consume()
        assert json.loads(kv.get_item(QUOTA_KEY))["count"] == DAILY_LIMIT - 1
        assert not quota.can_consume()

    def test_session_hold_expires_with_the_day(self, clock):
        kv = InMemoryKeyValueMedium(capacity=1)
        quota = QuotaCounter(kv, limit=1, clock=clock)
        quota.consume()
        assert not quota.can_consume()

        clock.advance(days=1)
        assert quota.can_consume()


def test_parse_quota_record():
    assert parse_quota_record(None, "2024-05-01") is None
    assert parse_quota_record('{"date": "2024-04-30", "count": 3}', "2024-05-01") is None
    assert parse_quota_record('{"date": "2024-05-01", "count": 3}', "2024-05-01").count == 3
    with pytest.raises(MalformedStoredData):
        parse_quota_record("[1]", "2024-05-01")
