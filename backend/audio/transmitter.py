"""
Beacon Transmitter — plays the classroom tone on the teacher's device.

The tone output is any object providing:
    configure(frequency)
    start()
    set_gain(value, ramp_seconds)
    stop()
"""

import asyncio
import logging

from audio.models import ToneProfile
from config import RAMP_SECONDS
from errors import AcquisitionError

logger = logging.getLogger(__name__)


class BeaconTransmitter:
    """Starts and stops a continuous tone without audible clicks."""

    def __init__(self, output, profile: ToneProfile, ramp_seconds: float = RAMP_SECONDS) -> None:
        self._output = output
        self._profile = profile
        self._ramp_seconds = ramp_seconds
        self._transmitting = False
        self._lock = asyncio.Lock()
        self._on_change: list = []  # async fn(is_transmitting)

    @property
    def is_transmitting(self) -> bool:
        return self._transmitting

    @property
    def frequency(self) -> float:
        return self._profile.frequency

    def on_change(self, callback) -> None:
        self._on_change.append(callback)

    async def _set_transmitting(self, value: bool) -> None:
        self._transmitting = value
        for cb in self._on_change:
            try:
                await cb(value)
            except Exception as e:
                logger.error(f"Transmitter callback error: {e}")

    async def start(self) -> None:
        """Start the tone, fading in. Does nothing if already transmitting."""
        async with self._lock:
            if self._transmitting:
                return

            try:
                self._output.configure(self._profile.frequency)
                self._output.set_gain(0.0, 0.0)
                self._output.start()
                self._output.set_gain(1.0, self._ramp_seconds)
            except Exception as e:
                logger.error(f"Audio output unavailable: {e}")
                raise AcquisitionError(f"Audio output unavailable: {e}") from e

            logger.info(f"Transmitting beacon at {self._profile.frequency:.0f} Hz")
            await self._set_transmitting(True)

    async def stop(self) -> None:
        """Fade the tone out, then release the output."""
        async with self._lock:
            if not self._transmitting:
                return

            self._output.set_gain(0.0, self._ramp_seconds)
            await asyncio.sleep(self._ramp_seconds)
            self._output.stop()
            logger.info("Beacon stopped")
            await self._set_transmitting(False)

    def hard_stop(self) -> None:
        """Release the output immediately. Only for process teardown."""
        if self._transmitting:
            self._output.stop()
            self._transmitting = False
