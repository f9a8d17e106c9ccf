"""
Teacher and student roles: wire the beacon/detector to the session protocol.
"""

import logging

from attendance.ledger import AttendanceLedger, normalize_room
from attendance.models import PresencePayload
from audio.detector import SignalDetector
from audio.models import DetectionState, DetectionStatus
from audio.transmitter import BeaconTransmitter
from discovery.identity import IdentityService
from session.protocol import HostSession, JoinerSession
from session.transport import Transport

logger = logging.getLogger(__name__)


class TeacherRole:
    """Hosts one room and plays its beacon."""

    def __init__(self, transport: Transport, ledger: AttendanceLedger, transmitter: BeaconTransmitter) -> None:
        self._transport = transport
        self._ledger = ledger
        self.transmitter = transmitter
        self.host: HostSession | None = None
        self._event_callbacks: list = []

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _forward(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            await cb(event_type, data)

    async def start(self, room_code: str) -> HostSession:
        """Host ``room_code`` and start the beacon. Restarts if the room changes."""
        if self.host is None or self.host.room_code != normalize_room(room_code):
            await self.stop()
            self.host = HostSession(self._transport, self._ledger, room_code)
            self.host.on_event(self._forward)
            await self.host.start()

        await self.transmitter.start()
        return self.host

    async def stop(self) -> None:
        await self.transmitter.stop()
        if self.host is not None:
            await self.host.stop()
            self.host = None

    def status(self) -> dict:
        return {
            "room_code": self.host.room_code if self.host else None,
            "host_state": self.host.state.value if self.host else None,
            "assumed_connected": self.host.assumed_connected if self.host else False,
            "connected_students": len(self.host.links) if self.host else 0,
            "transmitting": self.transmitter.is_transmitting,
            "frequency": self.transmitter.frequency,
        }


class StudentRole:
    """Listens for the beacon and reports presence once it is confirmed."""

    def __init__(self, transport: Transport, detector: SignalDetector, identity: IdentityService) -> None:
        self._transport = transport
        self.detector = detector
        self._identity = identity
        self.joiner: JoinerSession | None = None
        self.user: PresencePayload | None = None
        self._presence_sent = False
        detector.on_change(self._on_detection)

    async def join(self, name: str, roll_number: str, room_code: str) -> None:
        """Connect to the room's host and start listening for its beacon."""
        await self.leave()

        self.user = PresencePayload(
            name=name,
            roll_number=roll_number,
            device_id=self._identity.get_or_create(),
        )
        self._presence_sent = False
        self.joiner = JoinerSession(self._transport, room_code)
        await self.joiner.connect()

        await self.detector.reset()
        await self.detector.start_listening()

    async def rearm(self) -> None:
        """Listen again after a detection or an error."""
        self._presence_sent = False
        await self.detector.reset()
        await self.detector.start_listening()

    async def leave(self) -> None:
        await self.detector.stop_listening()
        if self.joiner is not None:
            await self.joiner.close()
            self.joiner = None

    async def _on_detection(self, state: DetectionState) -> None:
        if state.status != DetectionStatus.DETECTED or self._presence_sent:
            return
        if self.joiner is None or self.user is None:
            return

        logger.info(f"Beacon confirmed; reporting presence for {self.user.roll_number}")
        self._presence_sent = await self.joiner.send_presence(self.user)

    def status(self) -> dict:
        return {
            "detection": self.detector.state.model_dump(mode="json"),
            "link": self.joiner.status.value if self.joiner else None,
            "link_error": self.joiner.error_message if self.joiner else None,
            "room_code": self.joiner.room_code if self.joiner else None,
            "presence_sent": self.joiner.delivered if self.joiner else False,
            "presence_queued": self.joiner.has_pending if self.joiner else False,
        }
