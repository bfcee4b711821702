# server/queue.py
from __future__ import annotations

import json
from typing import Optional

import redis

from ..model import Event


class EventQueue:
    """FIFO event queue on a Redis list: producers rpush, workers blpop."""

    def __init__(self, client: redis.Redis, name: str = "flowci:events"):
        self.r = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str = "flowci:events") -> EventQueue:
        return cls(redis.Redis.from_url(url, decode_responses=True), name)

    def push(self, event: Event) -> None:
        self.r.rpush(self.name, json.dumps(event.to_dict()))  # FIFO: push right

    def pop(self, timeout_s: int = 5) -> Optional[Event]:
        item = self.r.blpop([self.name], timeout=timeout_s)  # FIFO: pop left
        if not item:
            return None
        _q, raw = item
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return Event.from_dict(json.loads(raw))

    def __len__(self) -> int:
        return int(self.r.llen(self.name))
