"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Resolving the acting principal from a bearer JWT
- Role-based access control (admin surface)
- Coach-owns-athlete checks (coach surface)

Services never look at the request; routers resolve a Principal here and
pass it explicitly into every mutating call.
"""
from dataclasses import dataclass
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from core.database import get_db
from core.exceptions import ForbiddenError, UnauthorizedError
from core.security import token_subject
from models import Athlete, PlanDraft

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)

ADMIN_ROLES = ("admin", "owner")
COACH_ROLES = ("coach", "admin", "owner")


@dataclass(frozen=True)
class Principal:
    """Acting identity carried through every mutating service call."""

    id: UUID
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Athlete:
    """
    Get the current authenticated user from JWT token.

    Raises UnauthorizedError if token is invalid or user not found.
    """
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    user_id = token_subject(credentials.credentials)
    if user_id is None:
        raise UnauthorizedError("Invalid authentication credentials")

    user = db.query(Athlete).filter(Athlete.id == user_id).first()
    if not user:
        raise UnauthorizedError("User not found")

    return user


def get_current_principal(current_user: Athlete = Depends(get_current_user)) -> Principal:
    return Principal(id=current_user.id, role=current_user.role)


def require_role(allowed_roles: tuple[str, ...]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        def admin_endpoint(actor: Principal = Depends(require_role(ADMIN_ROLES))):
            ...
    """
    def role_checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed_roles:
            raise ForbiddenError(f"Access denied. Required roles: {list(allowed_roles)}")
        return principal

    return role_checker


def require_admin(principal: Principal = Depends(require_role(ADMIN_ROLES))) -> Principal:
    """Require admin or owner role."""
    return principal


def require_coach(principal: Principal = Depends(require_role(COACH_ROLES))) -> Principal:
    """Require a coach (admins and owners pass as well)."""
    return principal


def coach_owns_athlete(db: Session, *, coach_id: UUID, athlete_id: UUID) -> bool:
    athlete = db.query(Athlete).filter(Athlete.id == athlete_id).first()
    return athlete is not None and athlete.coach_id == coach_id


def assert_can_manage_draft(db: Session, *, principal: Principal, draft: PlanDraft) -> None:
    """
    Ownership check for the coach surface.

    - admins/owners: always allowed
    - coaches: only for athletes they coach
    """
    if principal.is_admin:
        return
    if coach_owns_athlete(db, coach_id=principal.id, athlete_id=draft.athlete_id):
        return
    raise ForbiddenError("Access denied. You do not coach this athlete.")
