"""
Data Models Module

This module defines Pydantic models for provider payloads and for the JSON
responses served by the application.

Models are organized by functional area:
- Identity-provider models (token response, user profile)
- Session-backed user views
- Health / setup / error responses
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Identity Provider Models
# ============================================================================

class TokenResponse(BaseModel):
    """Token endpoint response. Only the access token is ever used."""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1, description="Bearer token for the userinfo endpoint")
    token_type: Optional[str] = Field(None, description="Token type (usually 'bearer')")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    refresh_token: Optional[str] = Field(None, description="Issued for the 'offline' scope, not persisted")
    id_token: Optional[str] = Field(None, description="OIDC ID token, not persisted")
    scope: Optional[str] = Field(None, description="Granted scopes")


class UserProfile(BaseModel):
    """
    Subject identity returned by the Kinde userinfo endpoint.

    Every attribute may or may not be present. Kinde has used two spellings
    for the name fields; ``given_name``/``family_name`` win over
    ``first_name``/``last_name`` when both are set.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    preferred_email: Optional[str] = None
    given_name: Optional[str] = None
    first_name: Optional[str] = None
    family_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def drop_non_strings(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @property
    def resolved_first_name(self) -> str:
        return self.given_name or self.first_name or ""

    @property
    def resolved_last_name(self) -> str:
        return self.family_name or self.last_name or ""

    @property
    def full_name(self) -> str:
        return " ".join(
            part for part in (self.resolved_first_name, self.resolved_last_name) if part
        )

    @property
    def initials(self) -> str:
        first = self.resolved_first_name
        last = self.resolved_last_name
        return first[:1] + last[:1]

    def to_session_values(self) -> Dict[str, str]:
        """
        Flatten the profile into session fields.

        ``user_id``, ``user_email`` and ``user_picture`` are only written when
        the provider sent them; the derived name fields are always written,
        possibly as empty strings.
        """
        values = {
            "user_name": self.full_name,
            "user_first_name": self.resolved_first_name,
            "user_last_name": self.resolved_last_name,
            "user_initials": self.initials,
        }
        if self.id is not None:
            values["user_id"] = self.id
        if self.preferred_email is not None:
            values["user_email"] = self.preferred_email
        if self.picture is not None:
            values["user_picture"] = self.picture
        return values


# ============================================================================
# Session-backed User Views
# ============================================================================

class SessionUser(BaseModel):
    """User fields as read back from the session."""
    id: Optional[str] = Field(None, description="Kinde user identifier")
    name: Optional[str] = Field(None, description="First and last name joined by a space")
    email: Optional[str] = Field(None, description="Preferred email address")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    initials: Optional[str] = Field(None, description="Up to two letters for an avatar")
    picture: Optional[str] = Field(None, description="Avatar URL")

    @classmethod
    def from_session_values(cls, values: Dict[str, str]) -> "SessionUser":
        return cls(
            id=values.get("user_id"),
            name=values.get("user_name"),
            email=values.get("user_email"),
            first_name=values.get("user_first_name"),
            last_name=values.get("user_last_name"),
            initials=values.get("user_initials"),
            picture=values.get("user_picture"),
        )


class HomeResponse(BaseModel):
    authenticated: bool
    user: Optional[SessionUser] = None


class UserResponse(BaseModel):
    """Shape of /api/user."""
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    picture: Optional[str] = None


# ============================================================================
# Health / Setup / Error Models
# ============================================================================

class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Service health status")


class SetupResponse(BaseModel):
    """Returned by / while required configuration is missing."""
    configured: bool = False
    env_file: str = ".env"
    current_domain: str = ""
    missing: List[str] = Field(default_factory=list, description="Environment variables to set")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp")
