from pydantic import BaseModel
from typing import Optional
import enum


class Role(str, enum.Enum):
    """
    Roles recognised by the leave workflow.

    - EMPLOYEE: submits and cancels own requests
    - MANAGER: first approval level
    - HR: further approval levels, policy and balance administration
    - ADMIN: may act at any approval level
    """
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"
    ADMIN = "admin"


class TokenData(BaseModel):
    staff_id: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None


class Actor(BaseModel):
    """The authenticated caller, as supplied by the identity layer."""
    staff_id: str
    role: Role
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.staff_id

    @property
    def is_hr(self) -> bool:
        return self.role in (Role.HR, Role.ADMIN)


SYSTEM_ACTOR = Actor(staff_id="system", role=Role.ADMIN, name="system")
