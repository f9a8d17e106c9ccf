"""Exception types shared across services."""


class AeroCheckError(Exception):
    """Base class for all AeroCheck errors."""


class AcquisitionError(AeroCheckError):
    """Microphone or speaker could not be acquired."""


class AddressInUseError(AeroCheckError):
    """The rendezvous address is already claimed by another listener."""

    def __init__(self, address: str):
        super().__init__(f"Rendezvous address already in use: {address}")
        self.address = address


class LinkError(AeroCheckError):
    """A single session link failed to connect or send."""
