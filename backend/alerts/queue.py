import bisect
from typing import Dict, Iterator, List, Optional, Tuple

from .models import Alert


class AlertPriorityQueue:
    """
    Active alerts kept sorted by (severity desc, created_at asc, seq asc).

    Insertion and removal are O(n) list operations; the active set is
    small (hundreds) so a sorted list beats a heap with lazy deletion.
    Not thread-safe: the engine holds its lock around every call.
    """

    def __init__(self):
        self._keys: List[Tuple] = []
        self._alerts: List[Alert] = []
        self._index: Dict[str, Alert] = {}

    def push(self, alert: Alert) -> None:
        key = alert.priority_key
        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self._alerts.insert(pos, alert)
        self._index[alert.id] = alert

    def remove(self, alert_id: str) -> Optional[Alert]:
        alert = self._index.pop(alert_id, None)
        if alert is None:
            return None
        pos = bisect.bisect_left(self._keys, alert.priority_key)
        while self._alerts[pos].id != alert_id:
            pos += 1
        del self._keys[pos]
        del self._alerts[pos]
        return alert

    def peek(self) -> Optional[Alert]:
        return self._alerts[0] if self._alerts else None

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._index.get(alert_id)

    def clear(self) -> None:
        self._keys.clear()
        self._alerts.clear()
        self._index.clear()

    def __contains__(self, alert_id: str) -> bool:
        return alert_id in self._index

    def __iter__(self) -> Iterator[Alert]:
        return iter(list(self._alerts))

    def __len__(self) -> int:
        return len(self._alerts)
