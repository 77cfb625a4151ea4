"""
Per-room serialization of the admission check-then-write sequence.

Two layers are held for the whole check+write of one room:

- a process-local ``threading.Lock`` keyed by room id, which serializes
  concurrent requests handled by the same worker process, and
- a ``SELECT ... FOR UPDATE`` row lock on the room, which serializes
  writers across worker processes on PostgreSQL.
"""

from contextlib import contextmanager
from typing import Optional
import logging
import os
import threading
import weakref

from sqlalchemy.orm import Session

from shared.errors import ConflictError
from shared.models import Room

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = float(os.getenv("ROOM_LOCK_TIMEOUT_SECONDS", "10"))


class RoomLockRegistry:
    """Lazily created lock per room id, dropped once no caller holds or awaits it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, room_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[room_id] = lock
            return lock

    @contextmanager
    def hold(self, room_id: int, timeout: float = LOCK_TIMEOUT_SECONDS):
        """
        Hold the lock of a room.

        Args:
            room_id: Room to serialize on
            timeout: Seconds to wait before giving up

        Raises:
            ConflictError: If the lock could not be acquired in time
        """
        lock = self.get(room_id)
        if not lock.acquire(timeout=timeout):
            logger.warning(f"Timed out waiting for room lock {room_id}")
            raise ConflictError("room is busy, please retry", field="room_id")
        try:
            yield
        finally:
            lock.release()


room_locks = RoomLockRegistry()


def lock_room_row(db: Session, room_id: int) -> Optional[Room]:
    """Load a room row with FOR UPDATE (a no-op on SQLite)."""
    return db.query(Room).filter(Room.id == room_id).with_for_update().first()
