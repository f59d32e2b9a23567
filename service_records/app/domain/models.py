"""
Request payloads for the farm record routes.
"""

from typing import Optional

from pydantic import BaseModel, Field


class BirdCreate(BaseModel):
    pen_id: str = Field(min_length=1)
    breed: str = Field(min_length=1)
    age: int = Field(ge=0)
    quantity: int = Field(ge=1)
    health_status: str = "healthy"
    last_checkup: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class BirdUpdate(BaseModel):
    pen_id: Optional[str] = None
    breed: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=1)
    health_status: Optional[str] = None
    last_checkup: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = None


class InvalidateRequest(BaseModel):
    """Admin cache invalidation; ``pattern`` is a glob over logical keys."""
    pattern: str = Field(min_length=1)
