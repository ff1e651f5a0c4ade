"""
Module: request.py
Description: Request models for the delivery subsystem.

Defines the immutable RequestSpec handed to the coordinator, the opaque
Payload it carries and the Priority tiers that order queued traffic.

Key Components:
- Priority: Delivery priority tiers (value is the sort rank)
- Payload: Opaque bytes plus content-type tag
- RequestSpec: Immutable intent to deliver
- generate_request_id(): System-generated request identifiers

Dependencies: pydantic, datetime, uuid, json
"""

import json
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Priority(IntEnum):
    """Delivery priority. Lower value is dispatched first."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


def generate_request_id() -> str:
    """Generate a request identifier of the form ``req_<12 hex chars>``."""
    return f"req_{uuid4().hex[:12]}"


class Payload(BaseModel):
    """
    Opaque request body.

    The delivery layer never inspects the bytes; typed serialization of
    domain objects belongs to the caller. Bytes are base64 encoded when
    the model is written to JSON.

    Attributes:
        data: Raw body bytes
        content_type: MIME type sent as Content-Type
        content_encoding: Optional Content-Encoding (e.g. gzip)
    """

    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes='base64',
        val_json_bytes='base64'
    )

    data: bytes = Field(..., description="Raw body bytes")
    content_type: str = Field(
        default="application/octet-stream",
        min_length=1,
        description="Content type tag"
    )
    content_encoding: Optional[str] = Field(
        default=None,
        description="Content encoding applied to data"
    )

    @property
    def size(self) -> int:
        """Size of the body in bytes."""
        return len(self.data)

    @classmethod
    def from_json_object(cls, obj: Any) -> "Payload":
        """Build a JSON payload from any json-serializable object."""
        return cls(
            data=json.dumps(obj, separators=(',', ':')).encode('utf-8'),
            content_type="application/json"
        )

    @classmethod
    def from_text(cls, text: str, content_type: str = "text/plain; charset=utf-8") -> "Payload":
        """Build a payload from a text body."""
        return cls(data=text.encode('utf-8'), content_type=content_type)


class RequestSpec(BaseModel):
    """
    Immutable intent to deliver a payload to an endpoint.

    Ownership passes to the DeliveryCoordinator on submit; afterwards the
    spec is only ever replaced by modified copies, never mutated.

    Attributes:
        id: Unique request identifier (generated when omitted)
        endpoint: Opaque endpoint string (a URL for the HTTP transport)
        payload: Opaque body plus content-type
        priority: Delivery priority tier
        max_retries: Retries after the first attempt (0 means no retry)
        timeout_seconds: Bound on a single attempt
        headers: Extra request headers (keys unique, case-insensitive)
        created_at: Creation timestamp (UTC)
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(
        default_factory=generate_request_id,
        min_length=1,
        max_length=128,
        description="Unique request identifier"
    )
    endpoint: str = Field(..., min_length=1, description="Delivery endpoint")
    payload: Payload = Field(..., description="Request body")
    priority: Priority = Field(default=Priority.NORMAL, description="Delivery priority")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-attempt timeout")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra headers")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp"
    )

    @field_validator('priority', mode='before')
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Accept priority names (case-insensitive) as well as values."""
        if isinstance(v, str):
            try:
                return Priority[v.strip().upper()]
            except KeyError:
                raise ValueError(
                    f"priority must be one of: {', '.join(p.name for p in Priority)}"
                )
        return v

    @field_validator('headers')
    @classmethod
    def validate_headers(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Reject header names that collide case-insensitively."""
        seen = set()
        for name in v:
            lowered = name.lower()
            if lowered in seen:
                raise ValueError(f"duplicate header: {name}")
            seen.add(lowered)
        return v

    @field_validator('created_at')
    @classmethod
    def validate_created_at(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def with_headers(self, extra: Dict[str, str]) -> "RequestSpec":
        """Return a copy with extra headers, replacing same-named ones."""
        lowered = {name.lower() for name in extra}
        headers = {k: v for k, v in self.headers.items() if k.lower() not in lowered}
        headers.update(extra)
        return self.model_copy(update={'headers': headers})

    def with_payload(self, payload: Payload) -> "RequestSpec":
        """Return a copy carrying a different payload."""
        return self.model_copy(update={'payload': payload})
