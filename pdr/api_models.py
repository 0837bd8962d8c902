from __future__ import annotations

from pydantic import BaseModel, Field


class EndpointOut(BaseModel):
    address: str = Field(..., description="Resolved peer address")
    uri: str = Field(..., description="transport://address:port")
    state: str = Field(..., description="present|retrying|excluded")
    connect_failures: int = Field(..., ge=0)
    reconnect_delay_ms: int = Field(..., ge=0)
    last_retry_delay_ms: int | None = Field(None, ge=0, description="Delay of the most recently scheduled reconnect")


class NotificationOut(BaseModel):
    kind: str = Field(..., description="add|remove")
    uri: str


class FailureReportOut(BaseModel):
    address: str
    uri: str
    state: str


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    endpoint: str | None = None
    message: str
