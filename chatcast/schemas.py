"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from chatcast.models import SessionStatus


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ChatEventRequest(BaseModel):
    """
    Inbound chat event forwarded by the bot gateway.

    date is the platform timestamp in seconds since the epoch.
    """
    chat_id: str = Field(..., min_length=1, description="Originating conversation identifier")
    username: Optional[str] = Field(None, description="Display name of the sender")
    text: str = Field(..., description="Message text")
    date: float = Field(..., ge=0, description="Event time, seconds since the epoch")

    @field_validator("chat_id", mode="before")
    @classmethod
    def coerce_chat_id(cls, v):
        """Chat platforms send numeric ids; store them as strings."""
        if isinstance(v, int):
            return str(v)
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"chat_id": "-100123", "username": "alice", "text": "hi", "date": 1736935200}
            ]
        }
    }


class TitleRequest(BaseModel):
    title: str = Field(..., description="Title for the session awaiting one")
    session_id: Optional[str] = Field(None, description="Reserved session id (defaults to the current one)")


class SessionTargetRequest(BaseModel):
    session_id: Optional[str] = Field(None, description="Session to act on (defaults to the current one)")


class StatusUpdateRequest(BaseModel):
    status: SessionStatus = Field(..., description="New status: active, paused or completed")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class SessionResponse(BaseModel):
    """A row of the session registry."""
    session_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """A recorded message. session_title is the title at the time of recording."""
    id: int
    chat_id: str
    session_id: Optional[str] = None
    session_title: Optional[str] = None
    date: str
    username: Optional[str] = None
    message: Optional[str] = None

    model_config = {"from_attributes": True}


class SessionDetailResponse(BaseModel):
    session_id: str
    title: str
    status: str = Field(..., description="active, paused, completed, or unknown")
    created_at: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    participants: list[str] = Field(default_factory=list)
    chat_ids: list[str] = Field(default_factory=list)
    message_count: int = Field(0, ge=0)

    model_config = {"from_attributes": True}


class RecorderStateResponse(BaseModel):
    phase: str = Field(..., description="idle, awaiting_title, active or paused")
    session_id: Optional[str] = None


class TransitionResponse(BaseModel):
    """Result of a recorder command. session is null when the command was a no-op."""
    result: str = Field(..., description="applied or noop")
    state: RecorderStateResponse
    session: Optional[SessionResponse] = None


class EventResponse(BaseModel):
    status: str = Field(default="ok")
    result: str = Field(..., description="accepted, dropped_paused, ignored, title_assigned or title_rejected")
    session_id: Optional[str] = None
    message_id: Optional[int] = None


class StatusUpdateResponse(BaseModel):
    success: bool = True
    message: str
    session_id: str
    status: str


class ReconcileResponse(BaseModel):
    success: bool = True
    message: str
    checked: int = Field(..., ge=0)
    updated: int = Field(..., ge=0)
    repaired: int = Field(0, ge=0)


class DatabaseStatusResponse(BaseModel):
    messages: int = Field(..., ge=0)
    sessions: int = Field(..., ge=0)
    recorder: RecorderStateResponse
