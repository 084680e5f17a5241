"""Pydantic schemas for clients."""

from datetime import datetime

from pydantic import BaseModel, field_validator


class ClientCreate(BaseModel):
    name: str
    email: str | None = None
    address: str | None = None
    default_payment_terms: str | None = None
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: str | None) -> str | None:
        if v is not None and "@" not in v:
            raise ValueError("Invalid email address")
        return v


class ClientOut(BaseModel):
    id: str
    owner_id: str
    name: str
    email: str | None = None
    address: str | None = None
    default_payment_terms: str | None = None
    notes: str | None = None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
