"""
Pydantic models for authentication APIs.
"""

from typing import Literal

from pydantic import BaseModel, Field

from request_models import Location

SelfServiceRole = Literal["customer", "mechanic"]
UserRole = Literal["customer", "mechanic", "admin"]


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=128)
    display_name: str = Field(default="", max_length=120)
    phone: str = Field(default="", max_length=32)
    role: SelfServiceRole = "customer"
    location: Location | None = None


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=128)


class UserResponse(BaseModel):
    id: int
    email: str
    display_name: str
    phone: str = ""
    role: UserRole
    is_available: bool = False
    location: Location | None = None
    created_at: str
    last_login_at: str | None = None


class AuthSessionResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


class MessageResponse(BaseModel):
    message: str
