"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "aerocheck-v1"
CONFIG_DIR = Path(os.environ.get("AEROCHECK_HOME", Path.home() / ".aerocheck"))
CONFIG_DIR.mkdir(parents=True, exist_ok=True)
STORE_FILE = CONFIG_DIR / "store.json"

# --- Tone profiles ---
# Higher frequencies are less audible but carry less far.
TONE_PROFILES = {
    "near-ultrasonic": {
        "frequency": 19500.0,
        "threshold": 15,
        "sustain_seconds": 1.5,
        "debounce_seconds": 0.5,
        "search_range": 3,
    },
    "long-range": {
        "frequency": 17000.0,
        "threshold": 3,
        "sustain_seconds": 0.5,
        "debounce_seconds": 0.3,
        "search_range": 4,
    },
}
DEFAULT_PROFILE = os.environ.get("AEROCHECK_PROFILE", "near-ultrasonic")

RAMP_SECONDS = 0.1
TICK_INTERVAL = 0.05  # seconds between detector evaluations

# --- Audio capture ---
FFT_SIZE = 2048
SMOOTHING = 0.5
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0
OUTPUT_SAMPLE_RATE = 48000

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = 8765
DISCOVERY_PORT = 41235  # UDP
DISCOVERY_INTERVAL = 2  # seconds
PEER_TIMEOUT = 10  # seconds before an announcement is considered stale
RESOLVE_TIMEOUT = 30  # seconds a joiner waits for the host to appear

LINK_PORT_MIN = 50000
LINK_PORT_MAX = 65000

RENDEZVOUS_PREFIX = "aerocheck-"
