"""User schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr

from app.core.rbac import UserRole


class UserResponse(BaseModel):
    """User response schema."""

    id: int
    email: EmailStr
    name: Optional[str] = None
    role: UserRole
    is_active: bool
    is_supervisor: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
