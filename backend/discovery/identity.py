"""
Device identity for proxy detection.

The identifier is random and never derived from the name or roll number a
student types in, so two people sharing one phone share one device id.
"""

import logging
import uuid

from storage.store import KeyValueStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device-id"


class IdentityService:
    """Loads or creates the long-lived identifier of this installation."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._device_id: str | None = None

    def get_or_create(self) -> str:
        """Return the persisted device id, generating it on first use."""
        if self._device_id:
            return self._device_id

        device_id = self._store.get(DEVICE_ID_KEY)
        if not isinstance(device_id, str) or not device_id:
            device_id = str(uuid.uuid4())
            self._store.set(DEVICE_ID_KEY, device_id)
            logger.info(f"Generated new device id {device_id}")

        self._device_id = device_id
        return device_id
