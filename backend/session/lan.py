"""
TCP transport for session links on the local network.

Wire format: type-length-payload frames. Each link starts with an ECDH
handshake keyed to the room's rendezvous address, followed by a confirmation
frame from each side; every MESSAGE frame after that carries one AES-GCM
encrypted JSON document.
"""

import asyncio
import json
import logging
import random
import struct
from functools import partial

from config import LINK_PORT_MAX, LINK_PORT_MIN
from errors import AddressInUseError, LinkError
from security.crypto import LinkCipher, RoomKeyExchange
from session.models import FrameType, LinkState
from session.transport import Link, Transport

logger = logging.getLogger(__name__)

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 64 * 1024


class LanLink(Link):
    """A link over one TCP connection to a room's host."""

    def __init__(self, address: str, peer: str = "") -> None:
        super().__init__(peer or address)
        self.address = address
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._cipher: LinkCipher | None = None
        self._read_task: asyncio.Task | None = None

    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def _write_frame(self, frame_type: int, payload: bytes = b"") -> None:
        self._writer.write(struct.pack(HEADER_FORMAT, frame_type, len(payload)) + payload)
        await self._writer.drain()

    async def _read_frame(self, expected: int | None = None) -> tuple[int, bytes]:
        frame_type, length = struct.unpack(HEADER_FORMAT, await self._reader.readexactly(HEADER_SIZE))
        if length > MAX_FRAME_SIZE:
            raise LinkError(f"Frame of {length} bytes exceeds limit")
        payload = await self._reader.readexactly(length) if length else b""
        if expected is not None and frame_type != expected:
            raise LinkError(f"Expected frame {expected:#x}, got {frame_type:#x}")
        return frame_type, payload

    async def handshake(self, initiator: bool) -> None:
        """Agree on a link key for this room and confirm both sides hold it.

        The joiner speaks first at each step. A peer hosting a different
        room fails the confirmation and the connection is dropped.
        """
        exchange = RoomKeyExchange(self.address)
        if initiator:
            await self._write_frame(FrameType.HANDSHAKE_PUBKEY, exchange.public_bytes)
            _, peer_public = await self._read_frame(FrameType.HANDSHAKE_PUBKEY)
            cipher = exchange.complete(peer_public)
            await self._write_frame(FrameType.HANDSHAKE_CONFIRM, cipher.confirmation())
            _, confirmation = await self._read_frame(FrameType.HANDSHAKE_CONFIRM)
            cipher.check_confirmation(confirmation)
        else:
            _, peer_public = await self._read_frame(FrameType.HANDSHAKE_PUBKEY)
            await self._write_frame(FrameType.HANDSHAKE_PUBKEY, exchange.public_bytes)
            cipher = exchange.complete(peer_public)
            _, confirmation = await self._read_frame(FrameType.HANDSHAKE_CONFIRM)
            cipher.check_confirmation(confirmation)
            await self._write_frame(FrameType.HANDSHAKE_CONFIRM, cipher.confirmation())
        self._cipher = cipher

    def start_reading(self) -> None:
        self._read_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            while True:
                frame_type, payload = await self._read_frame()
                if frame_type == FrameType.CLOSE:
                    break
                if frame_type != FrameType.MESSAGE:
                    logger.warning(f"Unexpected frame type from {self.peer}: {frame_type:#x}")
                    continue
                message = json.loads(self._cipher.open(payload).decode("utf-8"))
                await self._received(message)
            await self._closed()
        except asyncio.IncompleteReadError:
            await self._closed()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Read error on link {self.peer}: {e}")
            await self._failed(e)
        finally:
            self._close_writer()

    async def _transmit(self, message: dict) -> None:
        await self._write_frame(FrameType.MESSAGE, self._cipher.seal(json.dumps(message).encode("utf-8")))

    async def _shutdown(self) -> None:
        if self._writer is not None and self.state == LinkState.OPEN:
            try:
                await self._write_frame(FrameType.CLOSE)
            except (ConnectionError, OSError):
                pass
        task = self._read_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._close_writer()

    def _close_writer(self) -> None:
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()


class LanTransport(Transport):
    """Hosts listen on a random TCP port; the directory maps addresses to it.

    ``directory`` is a DiscoveryService (or anything with announce, withdraw,
    claimed_elsewhere and resolve).
    """

    def __init__(self, directory, host: str = "0.0.0.0") -> None:
        self._directory = directory
        self._host = host
        self._servers: dict[str, asyncio.Server] = {}
        self._links: dict[str, set[LanLink]] = {}
        self._tasks: set[asyncio.Task] = set()

    async def bind(self, address: str, on_link) -> None:
        if address in self._servers or self._directory.claimed_elsewhere(address):
            raise AddressInUseError(address)

        port = random.randint(LINK_PORT_MIN, LINK_PORT_MAX)
        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                server = await asyncio.start_server(
                    partial(self._handle_incoming, address, on_link),
                    self._host,
                    port,
                )
                break
            except OSError:
                port = random.randint(LINK_PORT_MIN, LINK_PORT_MAX)
        else:
            raise LinkError("Could not bind to any link port")

        self._servers[address] = server
        self._links[address] = set()
        self._directory.announce(address, port)
        logger.info(f"Listening for {address} on TCP port {port}")

    async def _handle_incoming(
        self,
        address: str,
        on_link,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peername = writer.get_extra_info("peername") or ("?", 0)
        link = LanLink(address, peer=f"{peername[0]}:{peername[1]}")
        link.attach(reader, writer)
        try:
            await link.handshake(initiator=False)
        except Exception as e:
            logger.warning(f"Handshake with {peername[0]} for {address} failed: {e}")
            writer.close()
            return

        link.state = LinkState.OPEN
        links = self._links.setdefault(address, set())
        links.add(link)
        link.on_close(lambda l: self._forget(address, l))
        link.on_error(lambda l, exc: self._forget(address, l))

        await on_link(link)
        if not link.is_finished:
            link.start_reading()

    async def _forget(self, address: str, link: LanLink) -> None:
        self._links.get(address, set()).discard(link)

    async def unbind(self, address: str) -> None:
        server = self._servers.pop(address, None)
        if server is None:
            return
        self._directory.withdraw(address)
        for link in list(self._links.pop(address, set())):
            await link.close()
        server.close()
        await server.wait_closed()
        logger.info(f"Stopped listening for {address}")

    async def connect(self, address: str) -> Link:
        link = LanLink(address)
        link.state = LinkState.CONNECTING
        task = asyncio.create_task(self._establish(link, address))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return link

    async def _establish(self, link: LanLink, address: str) -> None:
        writer: asyncio.StreamWriter | None = None
        try:
            ip, port = await self._directory.resolve(address)
            reader, writer = await asyncio.open_connection(ip, port)
            link.attach(reader, writer)
            await link.handshake(initiator=True)
        except asyncio.CancelledError:
            if writer:
                writer.close()
            raise
        except Exception as e:
            if writer:
                writer.close()
            await link._failed(LinkError(f"Could not connect to {address}: {e}"))
            return

        if link.is_finished:
            writer.close()
            return

        await link._opened()
        if not link.is_finished:
            link.start_reading()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for address in list(self._servers):
            await self.unbind(address)
