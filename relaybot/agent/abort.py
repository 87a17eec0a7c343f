"""Best-effort abort flags for conversations that have no session record yet."""

import threading
from collections import OrderedDict


class AbortMemory:
    """
    Bounded LRU map from sender/recipient address to an abort flag.

    Lossy by nature: once a session record exists the record's
    aborted_last_run is authoritative and this map is not consulted.
    """

    def __init__(self, max_entries: int = 1024):
        self.max_entries = max(1, max_entries)
        self._flags: OrderedDict[str, bool] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str | None) -> bool:
        if not key:
            return False
        with self._lock:
            value = self._flags.get(key)
            if value is None:
                return False
            self._flags.move_to_end(key)
            return value

    def set(self, key: str | None, aborted: bool) -> None:
        if not key:
            return
        with self._lock:
            self._flags[key] = aborted
            self._flags.move_to_end(key)
            while len(self._flags) > self.max_entries:
                self._flags.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._flags)
