# chatkeep/memory/quota.py

import json
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from chatkeep.memory.errors import MalformedStoredData
from chatkeep.memory.models import QuotaRecord, utcnow
from chatkeep.memory.storage import KeyValueMedium
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

QUOTA_KEY = "chatkeep_img_quota_v1"
DAILY_LIMIT = 10


def day_key(moment: datetime) -> str:
    return moment.date().isoformat()


def parse_quota_record(raw: Optional[str], today: str) -> Optional[QuotaRecord]:
    """
    Today's stored record, or None when nothing (or another day) is stored.
    Raises MalformedStoredData for payloads that are not a quota record.
    """
    if not raw:
        return None
    try:
        data: Any = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedStoredData(f"quota record is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedStoredData(f"quota record is a {type(data).__name__}, not an object")
    if data.get("date") != today:
        return None
    try:
        return QuotaRecord(date=today, count=max(0, int(data.get("count") or 0)))
    except (TypeError, ValueError) as e:
        raise MalformedStoredData(f"quota count is not an integer: {data.get('count')!r}") from e


class QuotaCounter:
    """
    Daily counter for a rate-limited operation (image generation).

    There is no reset timer: a stored record whose date is not today is
    treated as absent and replaced by {date: today, count: 0} on next access.
    consume() has no rollback; a charged generation stays charged.

    Every charge is also held in-session. When the medium refuses a write
    (it is shared with conversations and can be full), the held count still
    counts toward the limit, so a full medium never reopens the quota.
    """

    def __init__(
        self,
        medium: KeyValueMedium,
        limit: int = DAILY_LIMIT,
        key: str = QUOTA_KEY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.medium = medium
        self.limit = limit
        self.key = key
        self.clock = clock
        self._lock = threading.Lock()
        self._held: Optional[QuotaRecord] = None

    def _write(self, record: QuotaRecord) -> bool:
        try:
            self.medium.set_item(self.key, json.dumps({"date": record.date, "count": record.count}))
            return True
        except Exception as e:
            logger.error("Failed to persist quota record %s: %s", record, e)
            return False

    def _read(self) -> QuotaRecord:
        today = day_key(self.clock())
        stored = None
        try:
            stored = parse_quota_record(self.medium.get_item(self.key), today)
        except MalformedStoredData as e:
            logger.warning("Unreadable quota record; starting fresh: %s", e)
        except Exception as e:
            logger.warning("Failed to read quota record; starting fresh: %s", e)

        if stored is None:
            stored = QuotaRecord(date=today, count=0)
            self._write(stored)

        held = self._held
        if held is not None and held.date == today and held.count > stored.count:
            return QuotaRecord(date=today, count=held.count)
        return stored

    def current(self) -> QuotaRecord:
        with self._lock:
            return self._read()

    def can_consume(self) -> bool:
        return self.current().count < self.limit

    def remaining(self) -> int:
        return max(0, self.limit - self.current().count)

    def consume(self) -> QuotaRecord:
        with self._lock:
            record = self._read()
            record.count += 1
            self._held = QuotaRecord(date=record.date, count=record.count)
            if not self._write(record):
                logger.warning("Quota charge %d/%d held in session only.", record.count, self.limit)
            logger.info("Quota consumed: %d/%d for %s", record.count, self.limit, record.date)
            return record
