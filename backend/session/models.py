"""Pydantic models and constants for the session protocol."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel

from attendance.ledger import normalize_room
from attendance.models import PresencePayload
from config import RENDEZVOUS_PREFIX


class LinkState(str, Enum):
    """Lifecycle of a single host/joiner link."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class HostState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HOSTING = "hosting"
    ACTIVE = "active"
    CLOSED = "closed"


class MessageType:
    PRESENT = "PRESENT"


class PresenceMessage(BaseModel):
    """Wire payload: {"type": "PRESENT", "user": {name, rollNumber, deviceId}}."""
    type: Literal["PRESENT"] = MessageType.PRESENT
    user: PresencePayload

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# --- LAN framing ---

class FrameType:
    HANDSHAKE_PUBKEY = 0x01
    MESSAGE = 0x02
    CLOSE = 0x03
    HANDSHAKE_CONFIRM = 0x04


def rendezvous_address(room_code: str) -> str:
    """The address a host listens on for a given room."""
    return RENDEZVOUS_PREFIX + normalize_room(room_code)
