# concurrency.py
from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional


class ConcurrencyGroups:
    """
    Mutual exclusion per concurrency-group key, shared across runs.

    Only one owner holds a key at a time. Newcomers queue FIFO behind the
    holder; a newcomer that sets `cancel_in_progress` first cancels the
    holder and every owner queued ahead of it.

    Cancel callbacks are always invoked without the internal lock held, so a
    callback may take its own locks freely.
    """

    def __init__(self, poll_interval: float = 0.05):
        self._cond = threading.Condition()
        self._holders: Dict[str, str] = {}
        self._waiting: Dict[str, Deque[str]] = {}
        self._cancel: Dict[str, Callable[[], None]] = {}
        self.poll_interval = poll_interval

    def holder(self, key: str) -> Optional[str]:
        with self._cond:
            return self._holders.get(key)

    def waiting(self, key: str) -> List[str]:
        with self._cond:
            return list(self._waiting.get(key, ()))

    def acquire(
        self,
        key: str,
        owner: str,
        *,
        cancel: Callable[[], None],
        cancel_in_progress: bool = False,
        abort: Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until `owner` holds `key`.

        Returns False (without holding the key) if `abort` is set while
        waiting, e.g. because the owner itself was cancelled.
        """
        victims: List[Callable[[], None]] = []
        with self._cond:
            queue = self._waiting.setdefault(key, deque())
            if cancel_in_progress:
                current = self._holders.get(key)
                if current is not None and current != owner:
                    victims.append(self._cancel[current])
                victims.extend(self._cancel[o] for o in queue if o != owner)
            queue.append(owner)
            self._cancel[owner] = cancel

        for fn in victims:
            fn()

        with self._cond:
            try:
                while True:
                    if abort is not None and abort.is_set():
                        self._cancel.pop(owner, None)
                        return False
                    if key not in self._holders and queue[0] == owner:
                        self._holders[key] = owner
                        return True
                    self._cond.wait(self.poll_interval)
            finally:
                if owner in queue:
                    queue.remove(owner)
                if not queue and self._waiting.get(key) is queue:
                    del self._waiting[key]
                self._cond.notify_all()

    def release(self, key: str, owner: str) -> None:
        with self._cond:
            if self._holders.get(key) == owner:
                del self._holders[key]
                self._cancel.pop(owner, None)
            self._cond.notify_all()
