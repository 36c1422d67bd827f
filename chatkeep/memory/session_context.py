# chatkeep/memory/session_context.py

import json
import re
import threading
from typing import Dict, Optional

from chatkeep.memory.errors import MalformedStoredData
from chatkeep.memory.storage import KeyValueMedium
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_CONTEXT_KEY = "chatkeep_session_ctx"
LAST_CITY = "last_city"

# "in St. Louis, MO" is preferred over the looser "in springfield"
_REGION_CODED_PLACE = re.compile(r"\b(?:in|at|for)\s+([A-Za-z\s.-]+?,\s*[A-Z]{2})\b")
_FREE_TEXT_PLACE = re.compile(r"\b(?:in|at|for)\s+([A-Za-z\s.-]+)\b")
_PRONOUN_PLACE = re.compile(r"that city|this city", re.IGNORECASE)


def extract_place(text: str) -> Optional[str]:
    """
    Return the first place-like phrase after in/at/for, or None.
    Pronoun references ("that city", "this city") are not places.
    """
    raw = str(text or "")
    match = _REGION_CODED_PLACE.search(raw) or _FREE_TEXT_PLACE.search(raw)
    if not match or not match.group(1):
        return None
    if _PRONOUN_PLACE.search(match.group(1)):
        return None
    place = match.group(1).strip()
    return place or None


def parse_context(raw: Optional[str]) -> Dict[str, str]:
    """String-valued facts from a stored context. Raises MalformedStoredData unless it is a JSON object."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedStoredData(f"not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedStoredData(f"expected an object, got {type(data).__name__}")
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


class SessionContextStore:
    """Small last-write-wins map of facts inferred from the conversation."""

    def __init__(self, medium: KeyValueMedium, key: str = SESSION_CONTEXT_KEY) -> None:
        self.medium = medium
        self.key = key
        self._lock = threading.Lock()
        self._facts: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        try:
            return parse_context(self.medium.get_item(self.key))
        except MalformedStoredData as e:
            logger.warning("Unreadable session context; starting empty: %s", e)
        except Exception as e:
            logger.warning("Failed to read session context; starting empty: %s", e)
        return {}

    def _save(self) -> None:
        try:
            self.medium.set_item(self.key, json.dumps(self._facts, ensure_ascii=False))
        except Exception as e:
            logger.warning("Failed to persist session context: %s", e)

    def update(self, observed_text: str) -> Optional[str]:
        place = extract_place(observed_text)
        if place is None:
            return None
        with self._lock:
            self._facts[LAST_CITY] = place
            self._save()
        return place

    def get(self, key: str) -> Optional[str]:
        return self._facts.get(key)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._facts)
