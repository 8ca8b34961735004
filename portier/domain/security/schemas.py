"""Pydantic schemas for the security-log listing."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class SecurityLogOut(BaseModel):
    id: int
    action: str
    status: str
    ip_address: Optional[str] = None
    device_info: Optional[dict[str, Any]] = None
    details: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SecurityLogPage(BaseModel):
    items: list[SecurityLogOut]
    limit: int
    offset: int
