"""
UDP-based rendezvous discovery.

Hosts periodically broadcast the rendezvous addresses they listen on;
joiners resolve an address to the host's IP and TCP port from those
announcements, so no directory server is needed.
"""

import asyncio
import json
import logging
import socket
import time
import uuid

from config import (
    APP_ID,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    PEER_TIMEOUT,
    RESOLVE_TIMEOUT,
)
from discovery.models import RendezvousAnnouncement, RendezvousEntry
from errors import LinkError

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving rendezvous announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            payload = json.loads(data.decode("utf-8"))
            announcement = RendezvousAnnouncement(**payload)
        except Exception as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if announcement.app_id != APP_ID:
            return
        if announcement.instance_id == self.service.instance_id:
            return
        self.service.update_entry(announcement, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Announces local rendezvous addresses and tracks remote ones."""

    def __init__(self, port: int = DISCOVERY_PORT) -> None:
        self.instance_id = str(uuid.uuid4())
        self._port = port
        self._entries: dict[str, RendezvousEntry] = {}
        self._announced: dict[str, int] = {}  # address -> local TCP port
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._transport: asyncio.DatagramTransport | None = None

    async def start(self) -> None:
        """Start the announcement broadcaster and listener."""
        logger.info(f"Starting discovery on UDP port {self._port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR before binding so several instances can share the port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind(("0.0.0.0", self._port))

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        if self._broadcast_task:
            self._broadcast_task.cancel()
        if self._cleanup_task:
            self._cleanup_task.cancel()
        if self._transport:
            self._transport.close()
        logger.info("Discovery service stopped")

    def announce(self, address: str, port: int) -> None:
        self._announced[address] = port
        logger.info(f"Announcing {address} on TCP port {port}")

    def withdraw(self, address: str) -> None:
        self._announced.pop(address, None)

    def update_entry(self, announcement: RendezvousAnnouncement, ip_address: str) -> None:
        """Add or refresh where an address lives."""
        is_new = announcement.address not in self._entries
        self._entries[announcement.address] = RendezvousEntry(
            address=announcement.address,
            instance_id=announcement.instance_id,
            ip_address=ip_address,
            port=announcement.port,
            last_seen=time.time(),
        )
        if is_new:
            logger.info(f"Discovered {announcement.address} at {ip_address}:{announcement.port}")

    def _fresh_entry(self, address: str) -> RendezvousEntry | None:
        entry = self._entries.get(address)
        if entry and time.time() - entry.last_seen <= PEER_TIMEOUT:
            return entry
        return None

    def claimed_elsewhere(self, address: str) -> bool:
        """True if another live instance announced ``address`` recently."""
        return self._fresh_entry(address) is not None

    async def resolve(self, address: str, timeout: float = RESOLVE_TIMEOUT) -> tuple[str, int]:
        """Wait until ``address`` is announced and return (ip, port)."""
        if address in self._announced:
            return "127.0.0.1", self._announced[address]

        deadline = time.monotonic() + timeout
        while True:
            entry = self._fresh_entry(address)
            if entry:
                return entry.ip_address, entry.port
            if time.monotonic() >= deadline:
                raise LinkError(f"No host found for {address} within {timeout:.0f}s")
            await asyncio.sleep(0.2)

    def _broadcast_addresses(self) -> set[str]:
        bcast_ips = {"255.255.255.255", "127.255.255.255"}
        try:
            host_name = socket.gethostname()
            _, _, ips = socket.gethostbyname_ex(host_name)
            for ip in ips:
                if not ip.startswith("127."):
                    # Simple heuristic for /24 subnets
                    parts = ip.split(".")
                    if len(parts) == 4:
                        parts[3] = "255"
                        bcast_ips.add(".".join(parts))
        except OSError as e:
            logger.debug(f"Error resolving local IPs: {e}")
        return bcast_ips

    async def _broadcast_loop(self) -> None:
        """Periodically announce every locally bound address."""
        while True:
            try:
                if self._transport and self._announced:
                    bcast_ips = self._broadcast_addresses()
                    for address, port in list(self._announced.items()):
                        announcement = RendezvousAnnouncement(
                            app_id=APP_ID,
                            address=address,
                            instance_id=self.instance_id,
                            port=port,
                        )
                        data = json.dumps(announcement.model_dump()).encode("utf-8")
                        for bcast_ip in bcast_ips:
                            try:
                                self._transport.sendto(data, (bcast_ip, self._port))
                            except OSError:
                                # Some interfaces do not support broadcast
                                pass
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")

            await asyncio.sleep(DISCOVERY_INTERVAL)

    async def _cleanup_loop(self) -> None:
        """Forget addresses whose host stopped announcing."""
        while True:
            await asyncio.sleep(PEER_TIMEOUT)
            now = time.time()
            for address, entry in list(self._entries.items()):
                if now - entry.last_seen > PEER_TIMEOUT:
                    del self._entries[address]
                    logger.info(f"Rendezvous lost: {address} ({entry.ip_address})")
