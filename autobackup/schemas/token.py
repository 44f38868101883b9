"""OAuth token endpoint schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TokenResponse(BaseModel):
    """Token endpoint response for both code exchange and refresh."""

    model_config = ConfigDict(extra="ignore")

    token_type: str = "bearer"
    expires_in: int = Field(ge=0)
    scope: str = ""
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    user_id: str | None = None


class DriveUser(BaseModel):
    """Subset of the Graph ``/me`` response."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
