"""Pydantic models for rendezvous discovery."""

from pydantic import BaseModel


class RendezvousAnnouncement(BaseModel):
    """The JSON payload broadcast over UDP by a hosting instance."""
    app_id: str
    address: str  # rendezvous address, e.g. "aerocheck-101"
    instance_id: str  # changes on every run of the process
    port: int  # TCP port the host accepts links on


class RendezvousEntry(BaseModel):
    """Where a rendezvous address was last seen on the LAN."""
    address: str
    instance_id: str
    ip_address: str
    port: int
    last_seen: float  # Unix timestamp
