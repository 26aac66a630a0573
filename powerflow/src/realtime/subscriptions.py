"""
Reference-counted broadcast rooms.

A room exists while at least one client holds a reference to it. Joining
increments the room's count (creating the room), leaving or disconnecting
decrements it, and the room is deleted once the count returns to zero. The
ingestor asks ``has_members()`` before it builds a payload, so a device
nobody watches costs nothing beyond the lookup.

Every mutation goes through one ``threading.Lock``. The MQTT network thread
and the event loop may both read room state; only the lock-holder mutates it.
A client can only release references it holds itself: a stray ``leave`` for
a room the client never joined is ignored, so one client cannot cancel
another's subscription.

CHANGELOG:
- 2026-10-12: Per-client reference tracking for leave/disconnect
- 2026-10-09: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    """A connected client that can receive events."""

    @property
    def client_id(self) -> str: ...

    async def send(self, event: str, data: Any) -> None: ...


class SubscriptionRegistry:
    """Room membership with reference counts.

    Attributes exposed for diagnostics are snapshots; callers never see the
    live dictionaries.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[str, Subscriber] = {}
        self._counts: dict[str, int] = {}
        self._client_rooms: dict[str, Counter[str]] = {}

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def connect(self, subscriber: Subscriber) -> None:
        """Register a client; it holds no room references yet."""
        with self._lock:
            self._clients[subscriber.client_id] = subscriber
            self._client_rooms.setdefault(subscriber.client_id, Counter())
            total = len(self._clients)
        logger.info("Client %s connected (%d connected)", subscriber.client_id, total)

    def join(self, subscriber: Subscriber, room: str) -> int:
        """Add one reference to *room* for *subscriber*.

        Returns:
            int: The room's reference count after the join.
        """
        client_id = subscriber.client_id
        with self._lock:
            self._clients.setdefault(client_id, subscriber)
            self._client_rooms.setdefault(client_id, Counter())[room] += 1
            count = self._counts.get(room, 0) + 1
            self._counts[room] = count
        logger.info("Client %s joined room %s (refCount=%d)", client_id, room, count)
        return count

    def leave(self, client_id: str, room: str) -> int:
        """Release one of *client_id*'s references to *room*.

        Returns:
            int: The room's reference count after the leave (0 when the
                room no longer exists).
        """
        with self._lock:
            held = self._client_rooms.get(client_id)
            if not held or held[room] <= 0:
                count = self._counts.get(room, 0)
                logger.debug("Client %s left room %s it never joined", client_id, room)
                return count
            held[room] -= 1
            if held[room] == 0:
                del held[room]
            count = self._release(room, 1)
        logger.info("Client %s left room %s (refCount=%d)", client_id, room, count)
        return count

    def disconnect(self, client_id: str) -> list[str]:
        """Drop a client and every reference it held.

        Returns:
            list[str]: Rooms the client was a member of.
        """
        with self._lock:
            self._clients.pop(client_id, None)
            held = self._client_rooms.pop(client_id, Counter())
            for room, refs in held.items():
                self._release(room, refs)
            total = len(self._clients)
        rooms = sorted(held)
        logger.info(
            "Client %s disconnected, released %d room(s) (%d connected)",
            client_id,
            len(rooms),
            total,
        )
        return rooms

    def _release(self, room: str, refs: int) -> int:
        """Decrement *room* by *refs*, floored at zero. Caller holds the lock."""
        count = max(0, self._counts.get(room, 0) - refs)
        if count == 0:
            self._counts.pop(room, None)
        else:
            self._counts[room] = count
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count(self, room: str) -> int:
        """Reference count of *room*; 0 when it does not exist."""
        with self._lock:
            return self._counts.get(room, 0)

    def has_members(self, room: str) -> bool:
        """True while *room* exists."""
        with self._lock:
            return room in self._counts

    def rooms(self) -> dict[str, int]:
        """Snapshot of room -> reference count."""
        with self._lock:
            return dict(self._counts)

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        with self._lock:
            return len(self._clients)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def emit(self, room: str, event: str, payload: Any) -> bool:
        """Deliver *event* to every member of *room*.

        Returns False without touching *payload* when the room does not
        exist. A failed send to one member is logged and the remaining
        members still receive the event.

        Returns:
            bool: True when the room existed and delivery was attempted.
        """
        with self._lock:
            if room not in self._counts:
                return False
            members = [
                self._clients[client_id]
                for client_id, held in self._client_rooms.items()
                if held[room] > 0 and client_id in self._clients
            ]

        results = await asyncio.gather(
            *(member.send(event, payload) for member in members),
            return_exceptions=True,
        )
        for member, result in zip(members, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Delivery of %s to client %s failed: %s",
                    event,
                    member.client_id,
                    result,
                )
        return True
