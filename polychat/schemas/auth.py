"""
Pydantic schemas for authentication endpoints.
"""
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, field_validator


class SignupRequest(BaseModel):
    """Request schema for user signup."""
    full_name: Optional[str] = Field(None, max_length=200, description="User's full name")
    email: EmailStr = Field(..., description="User's email address")
    password: str = Field(..., min_length=8, description="User's password (min 8 characters)")

    @field_validator("password")
    @classmethod
    def validate_password_length(cls, v: str) -> str:
        """Validate password length in bytes (bcrypt limit is 72 bytes)."""
        if len(v.encode("utf-8")) > 72:
            raise ValueError("Password too long (bcrypt limit 72 bytes)")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "full_name": "Jane Doe",
                "email": "jane.doe@example.com",
                "password": "SecurePass123"
            }
        }


class SignupResponse(BaseModel):
    message: str
    user_id: int
    credits_remaining: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
