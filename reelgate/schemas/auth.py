"""Request and response schemas for the auth API."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SessionInfo(BaseModel):
    account_id: uuid.UUID
    username: str
    groups: list[str]
    is_admin: bool
    jti: str


class SessionRecordResponse(BaseModel):
    jti: str
    ip_address: str | None = None
    user_agent: str | None = None
    device_label: str | None = None
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    current: bool = False

    model_config = {"from_attributes": True}


class PasswordChange(BaseModel):
    current_password: str = ""
    new_password: str = Field(min_length=1)


class GroupsUpdate(BaseModel):
    groups: list[str]


class MfaCode(BaseModel):
    code: str = ""


class WebAuthnRegisterVerify(BaseModel):
    credential: dict[str, Any]
    name: str | None = None


class WebAuthnLoginOptions(BaseModel):
    username: str | None = None


class WebAuthnLoginVerify(BaseModel):
    credential: dict[str, Any]
    next: str | None = None


class CredentialResponse(BaseModel):
    id: uuid.UUID
    name: str | None = None
    device_type: str
    backed_up: bool
    created_at: datetime
    last_used_at: datetime | None = None

    model_config = {"from_attributes": True}


class CredentialRename(BaseModel):
    name: str


class ProviderLink(BaseModel):
    provider: str
    code: str = ""
    login_hint: str | None = None
