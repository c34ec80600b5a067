"""
RiskAnalysis - Auth Schemas
============================
Pydantic models for email/password credentials.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


class Credentials(BaseModel):
    """Sign-in request."""
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class Registration(Credentials):
    """Sign-up request with password strength rules."""
    password: str = Field(..., min_length=8)
    confirm_password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def check_strength(cls, v: str) -> str:
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not re.search(r"[0-9]", v):
            raise ValueError("Password must contain at least one number")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class UserResponse(BaseModel):
    """Signed-in user."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    email_verified: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None
