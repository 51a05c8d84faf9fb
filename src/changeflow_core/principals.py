"""Actor identities passed into the lifecycle engine.

End users act through their organization role. The automation scheduler acts
as the single system principal, so status history and comments always record
which kind of actor caused a transition.
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from .models import APPROVER_ROLES, MemberRole, User


@dataclass(frozen=True)
class Actor:
    """Identity on whose behalf an operation runs."""

    user_id: Optional[UUID]
    organization_id: Optional[UUID] = None
    role: Optional[MemberRole] = None
    display_name: str = "Unknown"
    is_system: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            user_id=user.id,
            organization_id=user.organization_id,
            role=user.role,
            display_name=user.full_name or user.email,
        )

    @property
    def can_approve(self) -> bool:
        return not self.is_system and self.role in APPROVER_ROLES

    @property
    def role_name(self) -> Optional[str]:
        if self.is_system:
            return "system"
        return self.role.value if self.role else None


SYSTEM_ACTOR = Actor(user_id=None, display_name="Change automation", is_system=True)
