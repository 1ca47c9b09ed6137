"""
schemas.py — request/response contracts for the webhook, status and admin routes.

Inbound webhook bodies come from third-party form and booking tools, so they
ignore unknown keys and accept the camelCase aliases those tools send.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from funnelbot.scheduling.schemas import FunnelSession, ScheduledJob


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TriggerRequest(BaseModel):
    """A recipient asked to start the funnel."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    phone: str = Field(min_length=3)
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    reset: bool = True   # False keeps an existing active session and re-sends its link


class FormCompletedRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    session_id: str = Field(min_length=1, alias="sessionId")
    form_data: dict = Field(default_factory=dict, alias="formData")
    name: Optional[str] = None
    lead_id: Optional[str] = None


class SessionOrPhoneRequest(BaseModel):
    """Either a session id or a phone number; routes reject a body with neither (400)."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    phone: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TriggerResponse(BaseModel):
    session: FunnelSession
    chatbot_url: str
    reused: bool
    jobs: List[ScheduledJob]


class FormCompletedResponse(BaseModel):
    session: FunnelSession
    changed: bool
    form_jobs_cancelled: int
    crm_lead_id: Optional[str] = None
    jobs: List[ScheduledJob]


class SessionActionResponse(BaseModel):
    session: FunnelSession
    changed: bool
    jobs_cancelled: int


class CountResponse(BaseModel):
    count: int
    at: datetime
