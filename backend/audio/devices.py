"""
Sound card adapters: a microphone spectrum feed and a speaker tone output.

The feed mimics a browser analyser node: Blackman-windowed FFT, temporal
smoothing, and magnitudes mapped from decibels onto 0..255.
"""

import asyncio
import logging
import threading

import numpy as np
import sounddevice as sd

from audio.models import FrequencySnapshot
from config import FFT_SIZE, MAX_DECIBELS, MIN_DECIBELS, OUTPUT_SAMPLE_RATE, SMOOTHING
from errors import AcquisitionError

logger = logging.getLogger(__name__)


class MicrophoneFeed:
    """Live frequency snapshots from the default input device."""

    def __init__(self, fft_size: int = FFT_SIZE, smoothing: float = SMOOTHING) -> None:
        self._fft_size = fft_size
        self._smoothing = smoothing
        self._window = np.blackman(fft_size)
        self._lock = threading.Lock()
        self._clear()
        self._stream: sd.InputStream | None = None

    def _clear(self) -> None:
        with self._lock:
            self._samples = np.zeros(self._fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self._fft_size // 2)

    async def open(self) -> None:
        # Each listening session starts from silence
        self._clear()

        def _open() -> sd.InputStream:
            stream = sd.InputStream(channels=1, dtype="float32", callback=self._on_audio)
            stream.start()
            return stream

        try:
            self._stream = await asyncio.to_thread(_open)
        except Exception as e:
            raise AcquisitionError(f"Microphone unavailable: {e}") from e
        logger.info(f"Microphone opened at {self._stream.samplerate:.0f} Hz")

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")
        with self._lock:
            self._samples = np.concatenate((self._samples, indata[:, 0]))[-self._fft_size:]

    def snapshot(self) -> FrequencySnapshot | None:
        if self._stream is None:
            return None

        with self._lock:
            samples = self._samples.copy()

        spectrum = np.abs(np.fft.rfft(samples * self._window))[: self._fft_size // 2] / self._fft_size
        self._smoothed = self._smoothing * self._smoothed + (1 - self._smoothing) * spectrum
        decibels = 20 * np.log10(np.maximum(self._smoothed, 1e-12))
        scaled = (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS) * 255
        return FrequencySnapshot(
            sample_rate=self._stream.samplerate,
            magnitudes=np.clip(scaled, 0, 255).astype(np.uint8),
        )

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
            logger.info("Microphone released")


class SpeakerToneOutput:
    """Phase-continuous sine on the default output device with gain ramps."""

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate
        self._frequency = 0.0
        self._phase = 0.0
        self._gain = 0.0
        self._gain_target = 0.0
        self._gain_step = 0.0
        self._lock = threading.Lock()
        self._stream: sd.OutputStream | None = None

    def configure(self, frequency: float) -> None:
        with self._lock:
            self._frequency = frequency

    def set_gain(self, value: float, ramp_seconds: float) -> None:
        with self._lock:
            samples = max(1.0, ramp_seconds * self._sample_rate)
            self._gain_target = value
            self._gain_step = (value - self._gain) / samples
            if ramp_seconds <= 0:
                self._gain = value

    def start(self) -> None:
        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            callback=self._render,
        )
        self._stream.start()

    def _render(self, outdata, frames, time_info, status) -> None:
        with self._lock:
            step = 2 * np.pi * self._frequency / self._sample_rate
            phases = self._phase + step * np.arange(frames)
            self._phase = float((phases[-1] + step) % (2 * np.pi)) if frames else self._phase

            gains = self._gain + self._gain_step * np.arange(1, frames + 1)
            if self._gain_step >= 0:
                gains = np.minimum(gains, self._gain_target)
            else:
                gains = np.maximum(gains, self._gain_target)
            if frames:
                self._gain = float(gains[-1])

        outdata[:, 0] = (gains * np.sin(phases)).astype(np.float32)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
