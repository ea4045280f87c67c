from typing import Literal, Optional

from pydantic import BaseModel

Role = Literal["VIEWER", "MANAGER", "ADMIN", "SUPER_ADMIN"]


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_active: bool = True
    updated_at: Optional[str] = None


class RoleUpdateRequest(BaseModel):
    role: Role
