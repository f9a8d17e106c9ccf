"""
AeroCheck — FastAPI application entry point.

Starts rendezvous discovery and the LAN transport on startup, wires the
teacher and student roles, and serves the REST API and WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import DashboardBroadcaster
from attendance.ledger import AttendanceLedger
from audio.detector import SignalDetector
from audio.devices import MicrophoneFeed, SpeakerToneOutput
from audio.models import ToneProfile
from audio.transmitter import BeaconTransmitter
from config import API_HOST, API_PORT, DEFAULT_PROFILE, STORE_FILE
from discovery.identity import IdentityService
from discovery.service import DiscoveryService
from session.lan import LanTransport
from session.roles import StudentRole, TeacherRole
from storage.store import KeyValueStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
profile = ToneProfile.named(DEFAULT_PROFILE)
store = KeyValueStore(STORE_FILE)
identity = IdentityService(store)
ledger = AttendanceLedger(store)
discovery_service = DiscoveryService()
transport = LanTransport(discovery_service)
transmitter = BeaconTransmitter(SpeakerToneOutput(), profile)
detector = SignalDetector(MicrophoneFeed(), profile)
teacher = TeacherRole(transport, ledger, transmitter)
student = StudentRole(transport, detector, identity)
dashboard = DashboardBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting AeroCheck services...")

    try:
        # Wire up event broadcasting
        ledger.on_event(dashboard.handle_event)
        teacher.on_event(dashboard.handle_event)
        transmitter.on_change(dashboard.handle_beacon)
        detector.on_change(dashboard.handle_detection)

        await discovery_service.start()

        logger.info(
            f"AeroCheck ready — API: {API_HOST}:{API_PORT}, "
            f"device: {identity.get_or_create()}, "
            f"profile: {DEFAULT_PROFILE} ({profile.frequency:.0f} Hz)"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down AeroCheck services...")
        transmitter.hard_stop()
        await student.leave()
        if teacher.host is not None:
            await teacher.host.stop()
        await transport.close()
        await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="AeroCheck",
    version="1.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(identity, ledger, teacher, student)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await dashboard.serve(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
