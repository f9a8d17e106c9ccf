"""
Attendance Ledger — the host's authoritative list of who is present.

Deduplicates by roll number and flags a record as a proxy when its device
id was already used to mark somebody else present in the same room.
"""

import asyncio
import logging
import time
import weakref
from typing import Any

from pydantic import ValidationError

from attendance.models import AttendanceRecord, PresencePayload
from storage.store import KeyValueStore

logger = logging.getLogger(__name__)

LEDGER_KEY_PREFIX = "attendance-list-"


def normalize_room(room_code: str) -> str:
    return room_code.strip().lower()


class AttendanceLedger:
    """Per-room attendance records with write-through persistence."""

    def __init__(self, store: KeyValueStore, clock=time.time) -> None:
        self._store = store
        self._clock = clock
        self._rooms: dict[str, list[AttendanceRecord]] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _lock_for(self, room: str) -> asyncio.Lock:
        # Weakly held: a room's lock lives only while someone holds or awaits it
        lock = self._locks.get(room)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room] = lock
        return lock

    def _records_for(self, room: str, cache: bool = True) -> list[AttendanceRecord]:
        """Return the live record list for a room, loading it on first access.

        With ``cache=False`` a room that is not loaded yet is read from the
        store without being kept in memory.
        """
        records = self._rooms.get(room)
        if records is not None:
            return records

        records = []
        for raw in self._store.get(LEDGER_KEY_PREFIX + room, []):
            try:
                records.append(AttendanceRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Dropping unreadable stored record in room {room}: {e}")
        if cache:
            if records:
                logger.info(f"Loaded {len(records)} attendance records for room {room}")
            self._rooms[room] = records
        return records

    def _persist(self, room: str) -> None:
        self._store.set(
            LEDGER_KEY_PREFIX + room,
            [r.model_dump(by_alias=True) for r in self._rooms[room]],
        )

    def get_records(self, room_code: str) -> list[AttendanceRecord]:
        """Return a snapshot of the room's records in acceptance order."""
        return list(self._records_for(normalize_room(room_code), cache=False))

    async def accept_presence(
        self, room_code: str, user: PresencePayload | dict[str, Any]
    ) -> AttendanceRecord | None:
        """
        Record a presence claim.

        Returns the new record, or None when the claim was a duplicate or
        malformed. Neither case is an error.
        """
        if not isinstance(user, PresencePayload):
            try:
                user = PresencePayload.model_validate(user)
            except ValidationError as e:
                logger.debug(f"Ignoring malformed presence payload: {e}")
                return None

        room = normalize_room(room_code)
        async with self._lock_for(room):
            records = self._records_for(room)

            if any(r.roll_number == user.roll_number for r in records):
                logger.debug(f"Duplicate presence for {user.roll_number} in room {room}")
                return None

            original = next((r for r in records if r.device_id == user.device_id), None)
            record = AttendanceRecord(
                name=user.name,
                roll_number=user.roll_number,
                device_id=user.device_id,
                timestamp=self._clock(),
                is_proxy=original is not None,
                proxy_original_name=original.name if original else None,
            )
            records.append(record)
            self._persist(room)

        if record.is_proxy:
            logger.warning(
                f"Proxy suspected in room {room}: {record.name} ({record.roll_number}) "
                f"used the device of {record.proxy_original_name}"
            )
        else:
            logger.info(f"Marked present in room {room}: {record.name} ({record.roll_number})")

        await self._emit("attendance_added", {"room_code": room, **record.model_dump(by_alias=True)})
        return record

    async def reset(self, room_code: str) -> None:
        """Clear the room's ledger in memory and in storage."""
        room = normalize_room(room_code)
        async with self._lock_for(room):
            self._rooms.pop(room, None)
            self._store.delete(LEDGER_KEY_PREFIX + room)

        logger.info(f"Attendance ledger reset for room {room}")
        await self._emit("attendance_reset", {"room_code": room})
