"""Tests for the signal detector's hysteresis, loop and error handling."""

import asyncio

import pytest

from audio.detector import SignalDetector, bin_index
from audio.models import DetectionStatus, FrequencySnapshot, ToneProfile
from conftest import FakeFeed, settle, tone_snapshot

LOUD = 80
QUIET = 2


def test_bin_index_rounds_half_up():
    assert bin_index(19500, 48000, 1024) == 832
    assert bin_index(17000, 44100, 1024) == 789
    # Exact halves round up, not to even
    assert bin_index(375, 48000, 32) == 1
    assert bin_index(1875, 48000, 32) == 3


def test_measure_searches_around_target(profile):
    detector = SignalDetector(FakeFeed(), profile)

    assert detector.measure(tone_snapshot(40, offset=3)) == 40
    assert detector.measure(tone_snapshot(40, offset=-3)) == 40
    assert detector.measure(tone_snapshot(40, offset=4)) == 0


def test_measure_clips_window_to_buffer():
    profile = ToneProfile(frequency=24000, threshold=15, sustain_seconds=1, debounce_seconds=0.5, search_range=3)
    detector = SignalDetector(FakeFeed(), profile)
    bins = [0] * 16
    bins[-1] = 99

    assert detector.measure(FrequencySnapshot(sample_rate=48000, magnitudes=bins)) == 99
    assert detector.measure(FrequencySnapshot(sample_rate=48000, magnitudes=[])) == 0


def test_sustained_signal_is_detected(profile):
    detector = SignalDetector(FakeFeed(), profile)

    for now in (0.0, 0.5, 1.0, 1.25):
        assert detector.evaluate(tone_snapshot(LOUD), now) != DetectionStatus.DETECTED
    assert detector.state.signal_since == 0.0
    assert detector.evaluate(tone_snapshot(LOUD), 1.5) == DetectionStatus.DETECTED


def test_volume_level_published_every_tick(profile):
    detector = SignalDetector(FakeFeed(), profile)

    detector.evaluate(tone_snapshot(LOUD), 0.0)
    assert detector.state.volume_level == LOUD
    detector.evaluate(tone_snapshot(QUIET), 0.1)
    assert detector.state.volume_level == QUIET


def test_threshold_is_exclusive(profile):
    detector = SignalDetector(FakeFeed(), profile)

    detector.evaluate(tone_snapshot(profile.threshold), 0.0)
    assert detector.state.signal_since is None


def test_short_dips_do_not_reset_sustain(profile):
    detector = SignalDetector(FakeFeed(), profile)
    script = [
        (0.0, LOUD), (0.2, QUIET), (0.4, LOUD), (0.6, QUIET), (0.8, LOUD),
        (1.0, QUIET), (1.2, LOUD), (1.4, QUIET),
    ]
    for now, level in script:
        detector.evaluate(tone_snapshot(level), now)
        assert detector.state.signal_since == 0.0

    assert detector.evaluate(tone_snapshot(LOUD), 1.6) == DetectionStatus.DETECTED


def test_long_dip_resets_sustain(profile):
    detector = SignalDetector(FakeFeed(), profile)
    for now in (0.0, 0.4, 0.8):
        detector.evaluate(tone_snapshot(LOUD), now)

    detector.evaluate(tone_snapshot(QUIET), 1.2)
    assert detector.state.signal_since == 0.0
    detector.evaluate(tone_snapshot(QUIET), 1.4)
    assert detector.state.signal_since is None

    detector.evaluate(tone_snapshot(LOUD), 1.6)
    assert detector.evaluate(tone_snapshot(LOUD), 3.0) != DetectionStatus.DETECTED
    assert detector.evaluate(tone_snapshot(LOUD), 3.2) == DetectionStatus.DETECTED


async def test_loop_detects_once_and_stops(profile, clock):
    feed = FakeFeed(levels=[LOUD] * 20, clock=clock, step=0.25)
    detector = SignalDetector(feed, profile, clock=clock, tick_interval=0)
    statuses = []
    detected = asyncio.Event()

    async def on_change(state):
        statuses.append(state.status)
        if state.status == DetectionStatus.DETECTED:
            detected.set()

    detector.on_change(on_change)
    await detector.start_listening()
    await asyncio.wait_for(detected.wait(), timeout=2)
    await settle()

    assert statuses.count(DetectionStatus.DETECTED) == 1
    assert detector.state.status == DetectionStatus.DETECTED
    assert not detector.is_listening
    # First loud tick at t=0.25, confirmed at t=1.75
    assert feed.snapshots_taken == 7
    assert feed.close_calls == 1


async def test_detected_requires_reset_to_rearm(profile, clock):
    feed = FakeFeed(levels=[LOUD] * 10, clock=clock, step=0.5)
    detector = SignalDetector(feed, profile, clock=clock, tick_interval=0)
    await detector.start_listening()
    for _ in range(50):
        if detector.state.status == DetectionStatus.DETECTED:
            break
        await asyncio.sleep(0)
    assert detector.state.status == DetectionStatus.DETECTED

    await detector.start_listening()
    assert feed.open_calls == 1

    await detector.reset()
    assert detector.state.status == DetectionStatus.IDLE
    assert detector.state.signal_since is None
    await detector.start_listening()
    assert feed.open_calls == 2
    assert detector.state.status == DetectionStatus.LISTENING
    await detector.stop_listening()


async def test_acquisition_failure_is_terminal(profile):
    feed = FakeFeed(fail_open=True)
    detector = SignalDetector(feed, profile, tick_interval=0)

    await detector.start_listening()
    assert detector.state.status == DetectionStatus.ERROR
    assert "Permission denied" in detector.state.error_message
    assert not detector.is_listening

    await detector.start_listening()
    assert feed.open_calls == 1


async def test_feed_failure_while_polling_is_terminal(profile, clock):
    feed = FakeFeed(clock=clock, fail_after=3)
    detector = SignalDetector(feed, profile, clock=clock, tick_interval=0)

    await detector.start_listening()
    await settle(20)

    assert detector.state.status == DetectionStatus.ERROR
    assert not detector.is_listening
    assert feed.close_calls == 1


async def test_unreadable_snapshot_is_terminal(profile, clock):
    feed = FakeFeed(levels=[LOUD, float("nan")], clock=clock)
    detector = SignalDetector(feed, profile, clock=clock, tick_interval=0)

    await detector.start_listening()
    await settle(20)

    assert detector.state.status == DetectionStatus.ERROR
    assert "NaN" in detector.state.error_message
    assert not detector.is_listening
    assert feed.close_calls == 1


async def test_stop_listening_discards_pending_signal(profile, clock):
    feed = FakeFeed(tail=LOUD, clock=clock, step=0.1)
    detector = SignalDetector(feed, profile, clock=clock, tick_interval=0)

    await detector.start_listening()
    await settle(3)
    assert detector.state.signal_since is not None

    await detector.stop_listening()
    assert detector.state.status == DetectionStatus.IDLE
    assert detector.state.signal_since is None
    assert not detector.is_listening
    assert feed.close_calls == 1


def test_unknown_profile_is_rejected():
    with pytest.raises(ValueError):
        ToneProfile.named("subsonic")
