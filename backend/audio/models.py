"""Models for the acoustic beacon and its detector."""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from pydantic import BaseModel

from config import TONE_PROFILES


class DetectionStatus(str, Enum):
    """All possible states of the signal detector."""
    IDLE = "idle"
    LISTENING = "listening"
    DETECTED = "detected"
    ERROR = "error"


class DetectionState(BaseModel):
    """Current detector state, exposed to the frontend."""
    status: DetectionStatus = DetectionStatus.IDLE
    volume_level: int = 0  # 0..255
    signal_since: float | None = None  # clock time the signal first crossed the threshold
    last_seen: float | None = None  # clock time the signal was last above the threshold
    error_message: str | None = None


class ToneProfile(BaseModel):
    """Frequency and detection tuning. Range and audibility trade off."""
    frequency: float
    threshold: int
    sustain_seconds: float
    debounce_seconds: float
    search_range: int

    @classmethod
    def named(cls, name: str) -> "ToneProfile":
        try:
            return cls(**TONE_PROFILES[name])
        except KeyError:
            raise ValueError(f"Unknown tone profile: {name}") from None


@dataclass(frozen=True)
class FrequencySnapshot:
    """Per-bin magnitudes (0..255) and the sample rate that produced them."""
    sample_rate: float
    magnitudes: Sequence[int]
