# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Hash-chained event log for the auditbond host.

Every state change publishes an event. Each entry links to the previous one
through SHA256(prev_link || canonical_json(entry)), so rewriting history
breaks verify().
"""

import threading
import time

import structlog

from crypto import canonical_json, hash_chain_append, hash_chain_init
from protocol import EVENT_TYPES

log = structlog.get_logger(__name__)


class EventLog:
    """In-memory append-only event log with subscribers."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: list[dict] = []
        self._head = hash_chain_init()
        self._subscribers = []

    def publish(self, event_type: str, payload: dict) -> dict:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            entry = {
                "seq": len(self._entries),
                "type": event_type,
                "timestamp": int(self._clock()),
                "payload": payload,
                "prev": self._head,
            }
            self._head = hash_chain_append(self._head, canonical_json(entry).decode("utf-8"))
            entry["link"] = self._head
            self._entries.append(entry)
            subscribers = list(self._subscribers)

        log.debug("event_published", event_type=event_type, seq=entry["seq"], payload=payload)
        for callback in subscribers:
            callback(entry)
        return entry

    def subscribe(self, callback):
        """Call *callback(entry)* for every future event."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def since(self, seq: int = 0) -> list[dict]:
        with self._lock:
            return [dict(e) for e in self._entries[seq:]]

    def of_type(self, event_type: str) -> list[dict]:
        with self._lock:
            return [dict(e) for e in self._entries if e["type"] == event_type]

    @property
    def head(self) -> str:
        return self._head

    def __len__(self) -> int:
        return len(self._entries)

    def verify(self) -> bool:
        """Recompute the chain from genesis and compare every link."""
        with self._lock:
            current = hash_chain_init()
            for i, entry in enumerate(self._entries):
                if entry["seq"] != i or entry["prev"] != current:
                    return False
                body = {k: v for k, v in entry.items() if k != "link"}
                current = hash_chain_append(current, canonical_json(body).decode("utf-8"))
                if entry["link"] != current:
                    return False
            return current == self._head


class EventBuffer:
    """Collects events during an operation; publishes them once it commits."""

    def __init__(self, log_: EventLog | None):
        self._log = log_
        self._pending: list[tuple[str, dict]] = []

    def add(self, event_type: str, payload: dict):
        self._pending.append((event_type, payload))

    def flush(self):
        pending, self._pending = self._pending, []
        if self._log is None:
            return
        for event_type, payload in pending:
            self._log.publish(event_type, payload)
