"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (also used as realtime event records)
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.]{3,32}$")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SignupRequest(BaseModel):
    """
    Account registration.

    username/display_name become the signup metadata copied into the new profile.
    """
    email: str = Field(..., min_length=3, max_length=320, description="Login email")
    password: str = Field(..., min_length=6, max_length=256, description="Account password")
    username: Optional[str] = Field(None, description="Unique handle (3-32 chars: letters, digits, _ .)")
    display_name: Optional[str] = Field(None, max_length=100, description="Name shown to other users")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        local, sep, domain = v.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("email must look like name@example.com")
        return v

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not USERNAME_PATTERN.match(v):
            raise ValueError("username must be 3-32 characters of letters, digits, '_' or '.'")
        return v


class LoginRequest(BaseModel):
    email: str = Field(..., description="Login email")
    password: str = Field(..., description="Account password")


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(None, description="New unique handle")
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=1000)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not USERNAME_PATTERN.match(v):
            raise ValueError("username must be 3-32 characters of letters, digits, '_' or '.'")
        return v


class ConversationCreateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=200, description="Conversation name (groups)")
    is_group: bool = Field(False, description="Group conversation flag")
    participant_ids: list[str] = Field(default_factory=list, description="Other users to add")


class DirectConversationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Peer to start a one-to-one chat with")


class ParticipantCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="User to add (yourself to join)")


class MessageCreateRequest(BaseModel):
    """
    Text message. sender_id may be omitted; when given it must be the caller.
    """
    content: str = Field(..., max_length=4096, description="Message text")
    sender_id: Optional[str] = Field(None, description="Must equal the authenticated user")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class CallRespondRequest(BaseModel):
    accept: bool = Field(..., description="Accept or decline the invitation")


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


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: str


class ProfileResponse(BaseModel):
    id: str
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    last_seen: Optional[str] = None
    online: bool = False
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class SenderProfile(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    model_config = {"from_attributes": True}


class ParticipantResponse(BaseModel):
    id: str
    conversation_id: str
    user_id: str
    joined_at: str

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    id: str
    name: Optional[str] = None
    is_group: bool
    created_by: Optional[str] = None
    created_at: str
    updated_at: str
    participants: list[ProfileResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """
    A message row as returned by the API and carried in realtime INSERT events.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    message_type: str
    created_at: str
    sender_profile: Optional[SenderProfile] = None

    model_config = {"from_attributes": True}


class OnlineUsersResponse(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    window_seconds: int


class PresenceResponse(BaseModel):
    user_id: str
    last_seen: Optional[str] = None


class CallInviteResponse(BaseModel):
    invite_id: str
    room_url: str
    conversation_id: str
    caller_id: str
    expires_at: str
    message: MessageResponse
    delivered_to: list[str] = Field(default_factory=list)
    missed: list[str] = Field(default_factory=list)


class CallRespondResponse(BaseModel):
    invite_id: str
    accepted: bool
    room_url: Optional[str] = None
