"""
Transport abstraction for session links, plus an in-process implementation.

A transport binds rendezvous addresses and opens links to them. Links
deliver structured (JSON-serializable) messages reliably and in order and
report their lifecycle through async callbacks.
"""

import asyncio
import json
import logging

from errors import AddressInUseError, LinkError
from session.models import LinkState

logger = logging.getLogger(__name__)


class Link:
    """One logical connection between a host and a joiner."""

    def __init__(self, peer: str = "") -> None:
        self.peer = peer
        self.state = LinkState.IDLE
        self._handlers: dict[str, list] = {"open": [], "message": [], "close": [], "error": []}

    def on_open(self, callback) -> None:
        """async fn(link)"""
        self._handlers["open"].append(callback)

    def on_message(self, callback) -> None:
        """async fn(link, message: dict)"""
        self._handlers["message"].append(callback)

    def on_close(self, callback) -> None:
        """async fn(link)"""
        self._handlers["close"].append(callback)

    def on_error(self, callback) -> None:
        """async fn(link, exc)"""
        self._handlers["error"].append(callback)

    @property
    def is_finished(self) -> bool:
        return self.state in (LinkState.CLOSED, LinkState.ERROR)

    async def _fire(self, event: str, *args) -> None:
        for cb in list(self._handlers[event]):
            try:
                await cb(self, *args)
            except Exception as e:
                logger.error(f"Link {event} handler error: {e}")

    async def _opened(self) -> None:
        if self.is_finished:
            return
        self.state = LinkState.OPEN
        await self._fire("open")

    async def _received(self, message: dict) -> None:
        await self._fire("message", message)

    async def _closed(self) -> None:
        if self.is_finished:
            return
        self.state = LinkState.CLOSED
        await self._fire("close")

    async def _failed(self, exc: Exception) -> None:
        if self.is_finished:
            return
        self.state = LinkState.ERROR
        await self._fire("error", exc)

    async def send(self, message: dict) -> None:
        """Send one message. A transport failure puts the link in ERROR."""
        if self.state != LinkState.OPEN:
            raise LinkError(f"Cannot send on a {self.state.value} link")
        try:
            await self._transmit(message)
        except Exception as e:
            await self._failed(e)
            raise LinkError(f"Send to {self.peer} failed: {e}") from e

    async def close(self) -> None:
        if self.is_finished:
            return
        try:
            await self._shutdown()
        finally:
            await self._closed()

    async def _transmit(self, message: dict) -> None:
        raise NotImplementedError

    async def _shutdown(self) -> None:
        pass


class Transport:
    """Interface implemented by concrete transports."""

    async def bind(self, address: str, on_link) -> None:
        """Listen on ``address``; ``on_link`` is async fn(link) for each joiner.

        Raises AddressInUseError if the address is already claimed.
        """
        raise NotImplementedError

    async def unbind(self, address: str) -> None:
        raise NotImplementedError

    async def connect(self, address: str) -> Link:
        """Return a link in CONNECTING state; it opens or fails later."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


# --- In-process transport ---

class MemoryLink(Link):
    def __init__(self, peer: str = "") -> None:
        super().__init__(peer)
        self._remote: "MemoryLink | None" = None

    async def _transmit(self, message: dict) -> None:
        remote = self._remote
        if remote is None or remote.state != LinkState.OPEN:
            raise ConnectionError("peer is gone")
        # Round-trip through JSON so both sides never share mutable objects
        await remote._received(json.loads(json.dumps(message)))

    async def _shutdown(self) -> None:
        remote, self._remote = self._remote, None
        if remote is not None:
            remote._remote = None
            await remote._closed()


class MemoryNetwork:
    """Address registry shared by the MemoryTransports of one process."""

    def __init__(self) -> None:
        self.listeners: dict[str, object] = {}


class MemoryTransport(Transport):
    """Links between sessions living in the same event loop."""

    def __init__(self, network: MemoryNetwork) -> None:
        self._network = network
        self._bound: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def bind(self, address: str, on_link) -> None:
        if address in self._network.listeners:
            raise AddressInUseError(address)
        self._network.listeners[address] = on_link
        self._bound.add(address)

    async def unbind(self, address: str) -> None:
        if address in self._bound:
            self._bound.discard(address)
            self._network.listeners.pop(address, None)

    async def connect(self, address: str) -> Link:
        link = MemoryLink(peer=address)
        link.state = LinkState.CONNECTING
        task = asyncio.create_task(self._establish(link, address))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return link

    async def _establish(self, link: MemoryLink, address: str) -> None:
        await asyncio.sleep(0)
        if link.is_finished:
            return
        on_link = self._network.listeners.get(address)
        if on_link is None:
            await link._failed(LinkError(f"No host listening at {address}"))
            return

        server_side = MemoryLink(peer="memory")
        server_side.state = LinkState.OPEN
        server_side._remote = link
        link._remote = server_side
        await on_link(server_side)
        await link._opened()

    async def close(self) -> None:
        for address in list(self._bound):
            await self.unbind(address)
        for task in list(self._tasks):
            task.cancel()
