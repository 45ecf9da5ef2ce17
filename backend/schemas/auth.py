"""Auth schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8)
    name: str = ""


class TokenRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    key: str


class MeResponse(BaseModel):
    id: int
    email: str
    name: str
    role: str
