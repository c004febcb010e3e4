"""Pydantic models for the license server wire format and local sessions.

The license server speaks PascalCase JSON (``ToolName``, ``SessionId``, ...).
Models accept both the wire names and the Python field names.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_pascal


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LicenseAcquireRequest(_WireModel):
    tool_name: str
    tool_version: str
    ip_address: str
    build_id: str


class LicenseAcquireResponse(_WireModel):
    """Answer to an acquire request.

    ``reason`` is set on denial, e.g. ``concurrent_limit_exceeded`` or
    ``tool_not_licensed``.
    """

    license_granted: bool = False
    session_id: str | None = None
    burst_mode: bool = False
    burst_count_remaining: int | None = None
    expires_at: datetime | None = None
    reason: str | None = None
    retry_after_seconds: float | None = None
    burst_events_exhausted: bool = False


class LicenseHeartbeatRequest(_WireModel):
    session_id: str


class LicenseHeartbeatResponse(_WireModel):
    success: bool = True
    expires_at: datetime | None = None


class LicenseReleaseRequest(_WireModel):
    session_id: str


class LicenseSession(BaseModel):
    """A granted license session.

    ``offline`` sessions were granted locally from the burst budget while
    the server was unreachable; they are never heartbeated or released
    against the server.
    """

    session_id: str
    burst_mode: bool = False
    burst_count_remaining: int | None = None
    expires_at: datetime
    offline: bool = False
