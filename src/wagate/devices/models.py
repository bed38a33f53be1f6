"""
Pydantic models for the device and tenant HTTP APIs.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ─── Device API ──────────────────────────────────────────────────────


class SendMessageRequest(BaseModel):
    """POST /api/devices/{id}/send request body."""

    to: str = Field(min_length=1)
    message: str = Field(min_length=1)


class DeviceStatusResponse(BaseModel):
    """Public status of one device."""

    status: str
    qrCode: Optional[str] = None
    lastUpdate: str


# ─── Tenant API ──────────────────────────────────────────────────────


class TenantSendRequest(BaseModel):
    """POST /api/v1/send-message request body."""

    to: str
    message: str
    instance_id: Optional[str] = None

    @field_validator("to", "message")
    @classmethod
    def _required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v


class LegacySendRequest(BaseModel):
    """POST /api/send-message request body."""

    instanceId: str
    to: str
    message: str

    @field_validator("instanceId", "to", "message")
    @classmethod
    def _required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v


class InstanceInfo(BaseModel):
    """One tenant instance in API responses."""

    instance_id: str
    name: str
    status: str
    updated_at: Optional[str] = None


class TenantResponse(BaseModel):
    """Envelope used by every tenant endpoint."""

    success: bool
    message: str
    data: Any = None
    error: Optional[str] = None
    technical_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
