from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.security.csrf import check_csrf_header
from app.security.sessions import load_user_from_token


class Role(str, Enum):
    SEMI_USER = 'semi_user'
    USER = 'user'
    ADMIN = 'admin'
    SUPER_ADMIN = 'super_admin'


class Permission(str, Enum):
    VIEW_CATALOG = 'view_catalog'
    CREATE_REQUISITION = 'create_requisition'
    VIEW_OWN_REQUISITIONS = 'view_own_requisitions'
    CREATE_RECEIPT = 'create_receipt'
    ISSUE_ITEMS = 'issue_items'
    ACCEPT_RETURNS = 'accept_returns'
    MANAGE_STOCK = 'manage_stock'
    VIEW_ALL_REQUISITIONS = 'view_all_requisitions'
    APPROVE_REQUISITION = 'approve_requisition'
    VIEW_ALL_RECEIPTS = 'view_all_receipts'
    VERIFY_RECEIPT = 'verify_receipt'
    MANAGE_ITEMS = 'manage_items'
    VIEW_REPORTS = 'view_reports'
    VIEW_AUDIT = 'view_audit'
    APPROVE_RECEIPT = 'approve_receipt'
    MANAGE_USERS = 'manage_users'


_BASE_PERMISSIONS = frozenset(
    {
        Permission.VIEW_CATALOG,
        Permission.CREATE_REQUISITION,
        Permission.VIEW_OWN_REQUISITIONS,
    }
)

# Store keepers handle stock; admins supervise it. Only super admins hold both.
ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.SEMI_USER: _BASE_PERMISSIONS,
    Role.USER: _BASE_PERMISSIONS
    | {
        Permission.CREATE_RECEIPT,
        Permission.ISSUE_ITEMS,
        Permission.ACCEPT_RETURNS,
        Permission.MANAGE_STOCK,
    },
    Role.ADMIN: _BASE_PERMISSIONS
    | {
        Permission.CREATE_RECEIPT,
        Permission.VIEW_ALL_REQUISITIONS,
        Permission.APPROVE_REQUISITION,
        Permission.VIEW_ALL_RECEIPTS,
        Permission.VERIFY_RECEIPT,
        Permission.MANAGE_ITEMS,
        Permission.VIEW_REPORTS,
        Permission.VIEW_AUDIT,
    },
    Role.SUPER_ADMIN: frozenset(Permission),
}


def coerce_role(value) -> Role:
    return Role(value.value if hasattr(value, 'value') else value)


def has_permission(role: Role | str, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(coerce_role(role), frozenset())


def permissions_for(role: Role | str) -> list[str]:
    granted = ROLE_PERMISSIONS.get(coerce_role(role), frozenset())
    return sorted(permission.value for permission in granted)


def is_admin_role(role: Role | str) -> bool:
    return coerce_role(role) in {Role.ADMIN, Role.SUPER_ADMIN}


@dataclass
class Principal:
    id: int
    username: str
    full_name: str
    role: Role
    department: str | None
    active: bool

    def can(self, permission: Permission) -> bool:
        return has_permission(self.role, permission)


def bearer_token(request: Request) -> str | None:
    header = request.headers.get('authorization', '')
    scheme, _, value = header.partition(' ')
    if scheme.lower() == 'bearer' and value.strip():
        return value.strip()
    return None


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    token = bearer_token(request)
    if token is None:
        token = request.cookies.get(settings.session_cookie_name)
        if token:
            check_csrf_header(request)

    user = load_user_from_token(db, token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authenticated')
    # Persist the sliding session expiry.
    db.commit()
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Account is deactivated')

    principal = Principal(
        id=user.id,
        username=user.username,
        full_name=user.full_name,
        role=coerce_role(user.role),
        department=user.department,
        active=user.is_active,
    )
    request.state.principal = principal
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def require_permission(*required: Permission):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not all(principal.can(permission) for permission in required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')
        return principal

    return _dep
