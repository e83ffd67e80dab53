"""
Auth-related Pydantic schemas for request/response validation.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ExchangeRequest(BaseModel):
    """Schema for exchanging an identity provider ID token."""
    model_config = ConfigDict(populate_by_name=True)

    id_token: str = Field(..., alias="idToken", min_length=1)


class AccessTokenResponse(BaseModel):
    """Schema for token response. The refresh token travels in a cookie."""
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    token_type: str = Field("bearer", alias="tokenType")


class MessageResponse(BaseModel):
    message: str


class ProfileResponse(BaseModel):
    """Schema for the authenticated principal."""
    subject: str
    email: Optional[str] = None
