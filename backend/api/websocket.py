"""WebSocket push of beacon, detection and attendance events to the UI."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

# Events whose latest payload is replayed to a client when it connects
STATE_EVENTS = ("beacon", "detection", "host_state")


class DashboardBroadcaster:
    """Fans events out to every connected UI and remembers the current state.

    A reconnecting dashboard gets the last beacon, detection and host state
    straight away instead of waiting for the next change.
    """

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._latest: dict[str, dict] = {}

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def serve(self, websocket: WebSocket) -> None:
        """Hold one client connection open until it goes away."""
        await websocket.accept()
        async with self._lock:
            for event in STATE_EVENTS:
                if event in self._latest:
                    await websocket.send_text(_encode(event, self._latest[event]))
            self._connections.append(websocket)
        logger.info(f"Dashboard connected. Total: {len(self._connections)}")

        try:
            while True:
                # Clients only listen
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            async with self._lock:
                if websocket in self._connections:
                    self._connections.remove(websocket)
            logger.info(f"Dashboard disconnected. Total: {len(self._connections)}")

    async def publish(self, event: str, data: dict) -> None:
        if event in STATE_EVENTS:
            if self._latest.get(event) == data:
                return
            self._latest[event] = data

        message = _encode(event, data)
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """For AttendanceLedger.on_event() and TeacherRole.on_event()."""
        await self.publish(event_type, data)

    async def handle_detection(self, state) -> None:
        # Unchanged ticks are suppressed by publish()
        await self.publish("detection", state.model_dump(mode="json"))

    async def handle_beacon(self, is_transmitting: bool) -> None:
        await self.publish("beacon", {"transmitting": is_transmitting})


def _encode(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data})
