"""Chat timeline: persisted history merged with real-time messages.

Messages reach a room two ways: from the database (with an ``_id``) and live
over the socket, where they may not carry an id yet. The timeline keeps one
copy of each, replacing a pending live message with its persisted twin once
that shows up.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

# A persisted message matches a pending one sent this close in time
PENDING_MATCH_WINDOW = timedelta(seconds=5)
MAX_TIMELINE_MESSAGES = 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings / datetimes / epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # NaN, inf and out-of-range epochs
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sender_id(message: Dict[str, Any]) -> str:
    sender = message.get("sender")
    if isinstance(sender, dict):
        return str(sender.get("_id") or sender.get("id") or "")
    return str(sender or "")


def message_key(message: Dict[str, Any]) -> str:
    """Identity of a message: its id, or a fingerprint when it has none."""
    if message.get("_id"):
        return f"id:{message['_id']}"
    timestamp = parse_timestamp(message.get("timestamp"))
    stamp = timestamp.isoformat() if timestamp else ""
    return f"pending:{sender_id(message)}:{stamp}:{message.get('message', '')}"


class ChatTimeline:
    """Ordered, de-duplicated view of a project's messages."""

    def __init__(self, max_messages: int = MAX_TIMELINE_MESSAGES):
        self.max_messages = max_messages
        self._messages: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return f"id:{message_id}" in self._messages

    def _find_pending_twin(self, message: Dict[str, Any]) -> Optional[str]:
        timestamp = parse_timestamp(message.get("timestamp"))
        for key, existing in self._messages.items():
            if existing.get("_id"):
                continue
            if sender_id(existing) != sender_id(message):
                continue
            if existing.get("message") != message.get("message"):
                continue
            existing_ts = parse_timestamp(existing.get("timestamp"))
            if timestamp is None or existing_ts is None:
                return key
            if abs(existing_ts - timestamp) <= PENDING_MATCH_WINDOW:
                return key
        return None

    def add(self, message: Dict[str, Any]) -> bool:
        """Add a message. Returns False when it was already known."""
        key = message_key(message)
        if key in self._messages:
            return False

        if message.get("_id"):
            twin = self._find_pending_twin(message)
            if twin is not None:
                del self._messages[twin]

        self._messages[key] = message
        while len(self._messages) > self.max_messages:
            self._messages.popitem(last=False)
        return True

    def extend(self, messages: Iterable[Dict[str, Any]]) -> int:
        return sum(1 for message in messages if self.add(message))

    def remove(self, message_id: str) -> bool:
        return self._messages.pop(f"id:{message_id}", None) is not None

    def clear(self) -> None:
        self._messages.clear()

    def messages(self) -> List[Dict[str, Any]]:
        """Messages ordered by timestamp; ties keep arrival order."""
        indexed: List[Tuple[datetime, int, Dict[str, Any]]] = [
            (parse_timestamp(m.get("timestamp")) or _EPOCH, i, m)
            for i, m in enumerate(self._messages.values())
        ]
        indexed.sort(key=lambda item: (item[0], item[1]))
        return [m for _, _, m in indexed]


def merge_history(
    persisted: Iterable[Dict[str, Any]],
    live: Iterable[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Merge persisted history with live messages into one ordered list."""
    timeline = ChatTimeline(max_messages=10 ** 9)
    timeline.extend(live)
    timeline.extend(persisted)
    return timeline.messages()
