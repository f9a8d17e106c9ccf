"""Tests for the host/joiner session protocol over the in-memory transport."""

import pytest

from attendance.models import PresencePayload
from conftest import settle
from errors import AddressInUseError, LinkError
from session.models import HostState, LinkState, rendezvous_address
from session.protocol import HostSession, JoinerSession
from session.transport import Link, MemoryNetwork, MemoryTransport, Transport

ALICE = PresencePayload(name="Alice", roll_number="21CS001", device_id="D1")
BOB = PresencePayload(name="Bob", roll_number="21CS002", device_id="D1")


class RecordingLink(Link):
    """A link whose lifecycle the test drives by hand."""

    def __init__(self, peer="manual"):
        super().__init__(peer)
        self.sent = []
        self.fail_sends = False

    async def _transmit(self, message):
        if self.fail_sends:
            raise ConnectionError("connection reset")
        self.sent.append(message)


class ManualTransport(Transport):
    def __init__(self):
        self.links = []

    async def connect(self, address):
        link = RecordingLink(address)
        link.state = LinkState.CONNECTING
        self.links.append(link)
        return link


async def open_joiner(network, room_code):
    joiner = JoinerSession(MemoryTransport(network), room_code)
    await joiner.connect()
    await settle()
    return joiner


def test_rendezvous_address_is_derived_from_room():
    assert rendezvous_address(" 101 ") == "aerocheck-101"
    assert rendezvous_address("CS-Lab") == "aerocheck-cs-lab"


async def test_presence_scenarios_end_to_end(ledger):
    network = MemoryNetwork()
    host = HostSession(MemoryTransport(network), ledger, "101")
    await host.start()
    assert host.state == HostState.ACTIVE

    # A: first student
    alice = await open_joiner(network, "101")
    assert alice.status == LinkState.OPEN
    assert len(host.links) == 1
    await alice.send_presence(ALICE)
    records = ledger.get_records("101")
    assert [(r.name, r.roll_number, r.device_id, r.is_proxy) for r in records] == [
        ("Alice", "21CS001", "D1", False)
    ]

    # B: another roll number from the same device
    bob = await open_joiner(network, "101")
    await bob.send_presence(BOB)
    records = ledger.get_records("101")
    assert len(records) == 2
    assert records[1].is_proxy is True
    assert records[1].proxy_original_name == "Alice"
    assert records[0].is_proxy is False

    # C: Alice again
    await alice.send_presence(ALICE)
    assert len(ledger.get_records("101")) == 2


async def test_presence_queued_until_link_opens():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    link = transport.links[0]
    assert joiner.status == LinkState.CONNECTING

    await joiner.send_presence(ALICE)
    assert joiner.has_pending
    assert link.sent == []

    await link._opened()
    assert joiner.status == LinkState.OPEN
    assert link.sent == [{
        "type": "PRESENT",
        "user": {"name": "Alice", "rollNumber": "21CS001", "deviceId": "D1"},
    }]
    assert not joiner.has_pending

    # A dropped link never replays the flushed message
    await link._closed()
    assert joiner.status == LinkState.CLOSED
    assert len(link.sent) == 1


async def test_queue_keeps_only_latest_presence():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    await joiner.send_presence(ALICE)
    await joiner.send_presence(BOB)

    link = transport.links[0]
    await link._opened()
    assert [m["user"]["name"] for m in link.sent] == ["Bob"]


async def test_queue_dropped_on_close():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    await joiner.send_presence(ALICE)
    link = transport.links[0]

    await joiner.close()
    await link._opened()

    assert joiner.status == LinkState.CLOSED
    assert link.sent == []


async def test_link_failure_is_terminal():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    await joiner.send_presence(ALICE)
    link = transport.links[0]

    await link._failed(ConnectionError("peer unavailable"))
    assert joiner.status == LinkState.ERROR
    assert "peer unavailable" in joiner.error_message
    assert not joiner.has_pending

    await joiner.connect()
    assert len(transport.links) == 1
    assert await joiner.send_presence(ALICE) is False
    assert link.sent == []
    assert not joiner.delivered


async def test_send_failure_moves_joiner_to_error():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    link = transport.links[0]
    await link._opened()

    link.fail_sends = True
    assert await joiner.send_presence(ALICE) is False
    assert joiner.status == LinkState.ERROR
    assert link.state == LinkState.ERROR
    assert not joiner.delivered


async def test_presence_sent_while_opening_is_not_sent_twice():
    transport = ManualTransport()
    joiner = JoinerSession(transport, "101")
    await joiner.connect()
    assert await joiner.send_presence(ALICE) is True
    link = transport.links[0]

    async def report_on_open(status):
        if status == LinkState.OPEN:
            await joiner.send_presence(BOB)

    joiner.on_change(report_on_open)
    await link._opened()

    assert [m["user"]["name"] for m in link.sent] == ["Bob"]
    assert joiner.delivered


async def test_connecting_to_missing_host_fails():
    joiner = await open_joiner(MemoryNetwork(), "404")
    assert joiner.status == LinkState.ERROR


async def test_address_conflict_is_assumed_connected(ledger):
    network = MemoryNetwork()
    await MemoryTransport(network).bind(rendezvous_address("101"), None)

    host = HostSession(MemoryTransport(network), ledger, "101")
    await host.start()

    assert host.state == HostState.ACTIVE
    assert host.assumed_connected


async def test_memory_transport_rejects_second_bind():
    network = MemoryNetwork()
    transport = MemoryTransport(network)
    await transport.bind("aerocheck-1", None)
    with pytest.raises(AddressInUseError) as excinfo:
        await MemoryTransport(network).bind("aerocheck-1", None)
    assert excinfo.value.address == "aerocheck-1"


async def test_one_failed_link_does_not_affect_others(ledger):
    network = MemoryNetwork()
    host = HostSession(MemoryTransport(network), ledger, "101")
    await host.start()
    alice = await open_joiner(network, "101")
    bob = await open_joiner(network, "101")
    assert len(host.links) == 2

    await alice.close()
    assert len(host.links) == 1

    await bob.send_presence(BOB)
    assert [r.name for r in ledger.get_records("101")] == ["Bob"]


async def test_host_ignores_unknown_and_malformed_messages(ledger):
    network = MemoryNetwork()
    host = HostSession(MemoryTransport(network), ledger, "101")
    await host.start()
    joiner = await open_joiner(network, "101")

    link = joiner._link
    await link.send({"type": "HELLO"})
    await link.send({"type": "PRESENT", "user": {"name": "Eve"}})
    await link.send({"type": "PRESENT"})

    assert ledger.get_records("101") == []
    assert len(host.links) == 1
    assert joiner.status == LinkState.OPEN


async def test_host_stop_closes_links_and_frees_address(ledger):
    network = MemoryNetwork()
    host = HostSession(MemoryTransport(network), ledger, "101")
    await host.start()
    joiner = await open_joiner(network, "101")

    await host.stop()
    assert host.state == HostState.CLOSED
    assert joiner.status == LinkState.CLOSED
    assert rendezvous_address("101") not in network.listeners


async def test_send_on_unopened_link_raises():
    link = RecordingLink()
    with pytest.raises(LinkError):
        await link.send({"type": "PRESENT"})
