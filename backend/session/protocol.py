"""
Session Protocol — host and joiner sides of the presence exchange.

The host listens on an address derived from the room code and hands every
PRESENT message to the attendance ledger. The joiner connects to that
address and sends one presence message, queueing it if the link is not
open yet.
"""

import logging

from attendance.ledger import AttendanceLedger, normalize_room
from attendance.models import PresencePayload
from errors import AddressInUseError, LinkError
from session.models import HostState, LinkState, MessageType, PresenceMessage, rendezvous_address
from session.transport import Link, Transport

logger = logging.getLogger(__name__)


class HostSession:
    """Teacher side: accepts any number of joiner links for one room."""

    def __init__(self, transport: Transport, ledger: AttendanceLedger, room_code: str) -> None:
        self._transport = transport
        self._ledger = ledger
        self.room_code = normalize_room(room_code)
        self.address = rendezvous_address(room_code)
        self.state = HostState.UNINITIALIZED
        self.assumed_connected = False
        self.links: list[Link] = []
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def start(self) -> None:
        """Bind the room's rendezvous address."""
        if self.state != HostState.UNINITIALIZED:
            return

        self.state = HostState.HOSTING
        try:
            await self._transport.bind(self.address, self._on_link)
        except AddressInUseError:
            # Usually our own registration from an earlier run that has not
            # expired yet; a genuine second host looks the same.
            logger.warning(f"{self.address} is already registered; assuming this host owns it")
            self.assumed_connected = True

        self.state = HostState.ACTIVE
        logger.info(f"Hosting room {self.room_code} at {self.address}")
        await self._emit("host_state", {"room_code": self.room_code, "state": self.state.value})

    async def stop(self) -> None:
        if self.state == HostState.CLOSED:
            return

        for link in list(self.links):
            await link.close()
        self.links.clear()
        if not self.assumed_connected:
            await self._transport.unbind(self.address)
        self.state = HostState.CLOSED
        logger.info(f"Stopped hosting room {self.room_code}")
        await self._emit("host_state", {"room_code": self.room_code, "state": self.state.value})

    async def _on_link(self, link: Link) -> None:
        self.links.append(link)
        link.on_message(self._on_message)
        link.on_close(self._on_link_finished)
        link.on_error(self._on_link_error)
        logger.info(f"Student connected from {link.peer} ({len(self.links)} connected)")
        await self._emit("student_connected", {"peer": link.peer, "connected": len(self.links)})

    async def _on_message(self, link: Link, message: dict) -> None:
        if not isinstance(message, dict) or message.get("type") != MessageType.PRESENT:
            logger.debug(f"Ignoring unknown message from {link.peer}: {message!r}")
            return
        await self._ledger.accept_presence(self.room_code, message.get("user"))

    async def _on_link_error(self, link: Link, exc: Exception) -> None:
        logger.warning(f"Link to {link.peer} failed: {exc}")
        await self._on_link_finished(link)

    async def _on_link_finished(self, link: Link) -> None:
        if link in self.links:
            self.links.remove(link)
            logger.info(f"Student disconnected from {link.peer} ({len(self.links)} connected)")
            await self._emit("student_disconnected", {"peer": link.peer, "connected": len(self.links)})


class JoinerSession:
    """Student side: one link to the room's host."""

    def __init__(self, transport: Transport, room_code: str) -> None:
        self._transport = transport
        self.room_code = normalize_room(room_code)
        self.address = rendezvous_address(room_code)
        self.status = LinkState.IDLE
        self.error_message: str | None = None
        self._link: Link | None = None
        self._pending: dict | None = None
        self.delivered = False
        self._on_change: list = []  # async fn(status)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def on_change(self, callback) -> None:
        self._on_change.append(callback)

    async def _set_status(self, status: LinkState) -> None:
        self.status = status
        for cb in self._on_change:
            try:
                await cb(status)
            except Exception as e:
                logger.error(f"Status callback error: {e}")

    async def connect(self) -> None:
        """Start connecting to the host. No automatic reconnect."""
        if self.status != LinkState.IDLE:
            return

        await self._set_status(LinkState.CONNECTING)
        try:
            link = await self._transport.connect(self.address)
        except Exception as e:
            await self._fail(e)
            return

        self._link = link
        link.on_open(self._on_open)
        link.on_close(self._on_close)
        link.on_error(self._on_error)

    async def send_presence(self, user: PresencePayload) -> bool:
        """
        Send a PRESENT message now, or hold it until the link opens.

        Returns False when the message was dropped.
        """
        message = PresenceMessage(user=user).to_wire()

        if self.status in (LinkState.IDLE, LinkState.CONNECTING):
            self._pending = message
            logger.info("Link not open yet; presence queued")
            return True
        if self.status != LinkState.OPEN:
            logger.warning(f"Presence dropped; link is {self.status.value}")
            return False

        return await self._send(message)

    async def _send(self, message: dict) -> bool:
        try:
            await self._link.send(message)
        except LinkError as e:
            await self._fail(e)
            return False
        self.delivered = True
        logger.info(f"Presence sent to {self.address}")
        return True

    async def _on_open(self, link: Link) -> None:
        # Take the slot first; a presence sent from a status callback supersedes it
        message, self._pending = self._pending, None
        await self._set_status(LinkState.OPEN)
        logger.info(f"Connected to {self.address}")
        if message is not None and not self.delivered and self.status == LinkState.OPEN:
            await self._send(message)

    async def _on_close(self, link: Link) -> None:
        self._pending = None
        if self.status != LinkState.ERROR:
            await self._set_status(LinkState.CLOSED)

    async def _on_error(self, link: Link, exc: Exception) -> None:
        await self._fail(exc)

    async def _fail(self, exc: Exception) -> None:
        if self.status == LinkState.ERROR:
            return
        self._pending = None
        self.error_message = str(exc)
        logger.error(f"Link to {self.address} failed: {exc}")
        await self._set_status(LinkState.ERROR)

    async def close(self) -> None:
        """Tear down the session, discarding any queued presence."""
        self._pending = None
        link, self._link = self._link, None
        if link is not None:
            await link.close()
        if self.status not in (LinkState.ERROR, LinkState.CLOSED):
            await self._set_status(LinkState.CLOSED)
