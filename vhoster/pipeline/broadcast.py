"""Per-id subscriber sets for live conversion status.

A connection is anything with ``send(str)``. A connection may follow several
ids at once; closing it removes it from every set.

Every connection gets its own outbox drained by its own sender thread, so a
slow peer only delays itself. A peer that falls ``max_pending`` messages
behind, or whose send fails, is dropped from every set.
"""

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Protocol, Set

from vhoster.domain.events import JobEvent
from vhoster.infrastructure.event_bus import EventBus
from vhoster.pipeline.jobs import JobRegistry

DEFAULT_MAX_PENDING = 256

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def send(self, message: str) -> None: ...


def status_message(media_id: str, job: Dict[str, Any]) -> str:
    return json.dumps({"type": "status", "id": media_id, "job": job})


class _Outbox:
    """FIFO of messages for one connection, sent from a dedicated thread."""

    def __init__(self, connection: Connection, on_failure: Callable[[Connection], None], max_pending: int):
        self.connection = connection
        self._on_failure = on_failure
        self._max_pending = max_pending
        self._pending: Deque[str] = deque()
        self._sending = False
        self._closed = False
        self._cond = threading.Condition()
        self._thread = threading.Thread(target=self._drain, name="vhoster-status-send", daemon=True)
        self._thread.start()

    def put(self, message: str) -> bool:
        """Queues without blocking; False once the connection is closed or too far behind."""
        with self._cond:
            if self._closed:
                return False
            if len(self._pending) >= self._max_pending:
                logger.warning(f"Status subscriber fell {self._max_pending} messages behind; dropping it")
                self._close_locked()
                return False
            self._pending.append(message)
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._close_locked()

    def _close_locked(self) -> None:
        self._closed = True
        self._pending.clear()
        self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float]) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._closed or (not self._pending and not self._sending), timeout)

    def _drain(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._closed or self._pending)
                if self._closed:
                    return
                message = self._pending.popleft()
                self._sending = True
            try:
                self.connection.send(message)
            except Exception as exc:
                logger.debug(f"Status send failed: {exc}")
                self._on_failure(self.connection)
                self.close()
                return
            with self._cond:
                self._sending = False
                self._cond.notify_all()


class StatusHub:
    """Pushes job snapshots to every connection subscribed to an id.

    Subscribe and publish queue under one lock, so a connection never sees an
    id's state go backwards.
    """

    def __init__(self, jobs: JobRegistry, max_pending: int = DEFAULT_MAX_PENDING):
        self.jobs = jobs
        self.max_pending = max_pending
        self._subscribers: Dict[str, Set[Connection]] = {}
        self._memberships: Dict[Connection, Set[str]] = {}
        self._outboxes: Dict[Connection, _Outbox] = {}
        self._lock = threading.Lock()

    def attach(self, event_bus: EventBus) -> None:
        """Publishes on every job transition."""
        event_bus.subscribe(JobEvent, self._on_job_event)

    def _on_job_event(self, event: JobEvent) -> None:
        self.publish(event.job.id, event.job.to_payload())

    def subscribe(self, connection: Connection, media_id: str) -> None:
        """Registers the connection and queues the current state as its first message."""
        with self._lock:
            self._subscribers.setdefault(media_id, set()).add(connection)
            self._memberships.setdefault(connection, set()).add(media_id)
            outbox = self._outboxes.get(connection)
            if outbox is None:
                outbox = _Outbox(connection, self.on_connection_closed, self.max_pending)
                self._outboxes[connection] = outbox
            if not outbox.put(status_message(media_id, self.jobs.snapshot(media_id))):
                self._drop(connection)

    def unsubscribe(self, connection: Connection, media_id: str) -> None:
        with self._lock:
            self._discard(connection, media_id)
            ids = self._memberships.get(connection)
            if ids is not None:
                ids.discard(media_id)

    def _discard(self, connection: Connection, media_id: str) -> None:
        members = self._subscribers.get(media_id)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._subscribers[media_id]

    def _drop(self, connection: Connection) -> None:
        for media_id in self._memberships.pop(connection, set()):
            self._discard(connection, media_id)
        outbox = self._outboxes.pop(connection, None)
        if outbox is not None:
            outbox.close()

    def publish(self, media_id: str, job: Optional[Dict[str, Any]] = None) -> int:
        """Queues the id's job state for all its subscribers; returns how many accepted it.

        ``job`` defaults to the registry's current snapshot. Never waits on a
        connection.
        """
        with self._lock:
            members = list(self._subscribers.get(media_id, ()))
            if not members:
                return 0
            message = status_message(media_id, job if job is not None else self.jobs.snapshot(media_id))
            queued = 0
            for connection in members:
                if self._outboxes[connection].put(message):
                    queued += 1
                else:
                    self._drop(connection)
            return queued

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Waits until every queued message has been handed to its connection."""
        with self._lock:
            outboxes = list(self._outboxes.values())
        deadline = None if timeout is None else time.monotonic() + timeout
        for outbox in outboxes:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not outbox.wait_idle(remaining):
                return False
        return True

    def on_connection_closed(self, connection: Connection) -> None:
        """Removes the connection from every subscriber set. Idempotent."""
        with self._lock:
            self._drop(connection)

    def subscriber_count(self, media_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(media_id, ()))
