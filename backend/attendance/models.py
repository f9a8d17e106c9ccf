"""Pydantic models for attendance records."""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, StringConstraints
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase keys; dumps camelCase with by_alias."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PresencePayload(CamelModel):
    """The identity fields a student sends to say "I am here"."""
    name: NonEmptyStr
    roll_number: NonEmptyStr
    device_id: NonEmptyStr


class AttendanceRecord(CamelModel):
    """One accepted presence claim. Frozen once the ledger creates it."""
    model_config = ConfigDict(frozen=True)

    name: str
    roll_number: str
    device_id: str
    timestamp: float  # Unix timestamp observed by the host
    is_proxy: bool = False
    proxy_original_name: str | None = None
