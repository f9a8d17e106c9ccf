"""
Signal Detector — decides whether the classroom beacon is present.

Polls a signal feed for frequency-magnitude snapshots and applies a
sustain-and-debounce rule: the tone must stay above the threshold for
``sustain_seconds`` before it counts, and short dips below the threshold
(shorter than ``debounce_seconds``) do not restart the count.

The feed is any object providing:
    async open()         -> acquire the microphone, raise on failure
    snapshot()           -> FrequencySnapshot of the latest audio
    close()              -> release the microphone
"""

import asyncio
import logging
import math
import time

import numpy as np

from audio.models import DetectionState, DetectionStatus, FrequencySnapshot, ToneProfile
from config import TICK_INTERVAL

logger = logging.getLogger(__name__)


def bin_index(frequency: float, sample_rate: float, buffer_length: int) -> int:
    """Map a frequency onto its FFT bin, rounding half up."""
    nyquist = sample_rate / 2
    return math.floor(frequency / nyquist * buffer_length + 0.5)


class SignalDetector:
    """Cooperative polling loop over a signal feed."""

    def __init__(
        self,
        feed,
        profile: ToneProfile,
        clock=time.monotonic,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._feed = feed
        self._profile = profile
        self._clock = clock
        self._tick_interval = tick_interval
        self._task: asyncio.Task | None = None
        self._on_change: list = []  # async fn(state)
        self.state = DetectionState()

    @property
    def profile(self) -> ToneProfile:
        return self._profile

    @property
    def is_listening(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_change(self, callback) -> None:
        """Register callback: async fn(state: DetectionState), called every tick."""
        self._on_change.append(callback)

    async def _emit(self) -> None:
        for cb in self._on_change:
            try:
                await cb(self.state)
            except Exception as e:
                logger.error(f"Detection callback error: {e}")

    def measure(self, snapshot: FrequencySnapshot) -> int:
        """Strongest magnitude within ``search_range`` bins of the target."""
        bins = np.asarray(snapshot.magnitudes)
        index = bin_index(self._profile.frequency, snapshot.sample_rate, len(bins))
        lo = max(index - self._profile.search_range, 0)
        hi = min(index + self._profile.search_range + 1, len(bins))
        if lo >= hi:
            return 0
        return int(min(bins[lo:hi].max(), 255))

    def evaluate(self, snapshot: FrequencySnapshot, now: float) -> DetectionStatus:
        """Run one detection tick against ``snapshot`` at clock time ``now``."""
        state = self.state
        signal = self.measure(snapshot)
        state.volume_level = signal

        if signal > self._profile.threshold:
            state.last_seen = now
            if state.signal_since is None:
                state.signal_since = now
            if now - state.signal_since >= self._profile.sustain_seconds:
                state.status = DetectionStatus.DETECTED
        elif state.signal_since is not None and now - state.last_seen >= self._profile.debounce_seconds:
            state.signal_since = None

        return state.status

    async def start_listening(self) -> None:
        """Acquire the feed and start polling. No-op unless idle."""
        if self.state.status != DetectionStatus.IDLE:
            return

        try:
            await self._feed.open()
        except Exception as e:
            logger.error(f"Microphone access failed: {e}")
            self.state = DetectionState(status=DetectionStatus.ERROR, error_message=str(e))
            await self._emit()
            return

        self.state = DetectionState(status=DetectionStatus.LISTENING)
        self._task = asyncio.create_task(self._poll_loop())
        # Runs even if the task is cancelled before its first tick
        self._task.add_done_callback(lambda _: self._feed.close())
        logger.info(f"Listening for beacon at {self._profile.frequency:.0f} Hz")
        await self._emit()

    async def _poll_loop(self) -> None:
        while self.state.status == DetectionStatus.LISTENING:
            try:
                snapshot = self._feed.snapshot()
                status = self.evaluate(snapshot, self._clock()) if snapshot is not None else None
            except Exception as e:
                logger.error(f"Detection tick failed: {e}")
                self.state.status = DetectionStatus.ERROR
                self.state.error_message = str(e)
                await self._emit()
                return

            if status is not None:
                await self._emit()
                if status == DetectionStatus.DETECTED:
                    logger.info("Beacon detected")
                    return

            await asyncio.sleep(self._tick_interval)

    async def _cancel_loop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def stop_listening(self) -> None:
        """Cancel the loop. A pending (not yet detected) signal is discarded."""
        await self._cancel_loop()
        if self.state.status == DetectionStatus.LISTENING:
            self.state = DetectionState()
            await self._emit()

    async def reset(self) -> None:
        """Return to idle so the detector can be armed again."""
        await self._cancel_loop()
        self.state = DetectionState()
        await self._emit()
