"""Shared fixtures: fake audio devices, clocks and in-memory services."""

import asyncio
import os
import tempfile

# Keep config from creating ~/.aerocheck during tests
os.environ.setdefault("AEROCHECK_HOME", tempfile.mkdtemp(prefix="aerocheck-test-"))

import pytest

from attendance.ledger import AttendanceLedger
from audio.detector import bin_index
from audio.models import FrequencySnapshot, ToneProfile
from errors import AcquisitionError
from storage.store import KeyValueStore

SAMPLE_RATE = 48000
BUFFER_LENGTH = 1024


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def tone_snapshot(level: int, frequency: float = 19500.0, offset: int = 0) -> FrequencySnapshot:
    """A quiet spectrum with ``level`` at the bin of ``frequency`` (+ offset)."""
    bins = [0] * BUFFER_LENGTH
    bins[bin_index(frequency, SAMPLE_RATE, BUFFER_LENGTH) + offset] = level
    return FrequencySnapshot(sample_rate=SAMPLE_RATE, magnitudes=bins)


class FakeFeed:
    """Plays back a script of beacon levels, one per snapshot.

    When a clock is given, every snapshot advances it by ``step`` seconds.
    After the script runs out the feed keeps returning ``tail``.
    """

    def __init__(self, levels=(), clock=None, step=0.25, tail=0, fail_open=False, fail_after=None):
        self.levels = list(levels)
        self.clock = clock
        self.step = step
        self.tail = tail
        self.fail_open = fail_open
        self.fail_after = fail_after
        self.open_calls = 0
        self.close_calls = 0
        self.snapshots_taken = 0

    async def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise AcquisitionError("Permission denied")

    def snapshot(self) -> FrequencySnapshot:
        if self.fail_after is not None and self.snapshots_taken >= self.fail_after:
            raise OSError("Input overflow")
        self.snapshots_taken += 1
        if self.clock is not None:
            self.clock.now += self.step
        level = self.levels.pop(0) if self.levels else self.tail
        return tone_snapshot(level)

    def close(self) -> None:
        self.close_calls += 1


class FakeToneOutput:
    """Records every call made by the transmitter."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def configure(self, frequency):
        self.calls.append(("configure", frequency))

    def start(self):
        if self.fail:
            raise OSError("No output device")
        self.calls.append(("start",))

    def set_gain(self, value, ramp_seconds):
        self.calls.append(("set_gain", value, ramp_seconds))

    def stop(self):
        self.calls.append(("stop",))


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def store():
    return KeyValueStore()


@pytest.fixture
def ledger(store):
    return AttendanceLedger(store)


@pytest.fixture
def profile():
    return ToneProfile.named("near-ultrasonic")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_feed():
    return FakeFeed


@pytest.fixture
def tone_output():
    return FakeToneOutput()
