"""
Link encryption bound to a room.

Each link runs an X25519 exchange; the AES-256-GCM key is derived with the
room's rendezvous address as HKDF salt, and every frame carries the address
as associated data. A joiner that reaches another room's listener derives a
different key, so the handshake confirmation fails before any presence is
exchanged.

Keys are ephemeral (one per link) and never persisted. This keeps presence
messages private on a shared classroom network; it does not prove that the
sender heard the beacon.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from config import APP_ID
from errors import LinkError

NONCE_SIZE = 12
KEY_SIZE = 32
CONFIRM_LABEL = b"confirm:"


class RoomKeyExchange:
    """One side of the key exchange for a link to ``address``."""

    def __init__(self, address: str) -> None:
        self.address = address
        self._private_key = X25519PrivateKey.generate()
        self.public_bytes = self._private_key.public_key().public_bytes(
            encoding=Encoding.Raw,
            format=PublicFormat.Raw,
        )

    def complete(self, peer_public_bytes: bytes) -> "LinkCipher":
        """Derive the link cipher from the peer's 32-byte public key."""
        if len(peer_public_bytes) != KEY_SIZE:
            raise LinkError(f"Bad public key length: {len(peer_public_bytes)}")
        shared_secret = self._private_key.exchange(
            X25519PublicKey.from_public_bytes(peer_public_bytes)
        )
        key = HKDF(
            algorithm=SHA256(),
            length=KEY_SIZE,
            salt=self.address.encode("utf-8"),
            info=f"{APP_ID}-link-key".encode("utf-8"),
        ).derive(shared_secret)
        return LinkCipher(key, self.address)


class LinkCipher:
    """AES-GCM frames for one link; the rendezvous address is the AAD."""

    def __init__(self, key: bytes, address: str) -> None:
        self._aead = AESGCM(key)
        self._aad = address.encode("utf-8")

    def seal(self, plaintext: bytes) -> bytes:
        """Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)"""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, self._aad)

    def open(self, data: bytes) -> bytes:
        """Raises InvalidTag on tampering or a key for another room."""
        return self._aead.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], self._aad)

    def confirmation(self) -> bytes:
        return self.seal(CONFIRM_LABEL + self._aad)

    def check_confirmation(self, data: bytes) -> None:
        """Verify the peer's confirmation; raises LinkError if the rooms differ."""
        try:
            plaintext = self.open(data)
        except InvalidTag:
            raise LinkError("Handshake rejected: peer is not hosting this room")
        if plaintext != CONFIRM_LABEL + self._aad:
            raise LinkError("Handshake rejected: bad confirmation")
