from __future__ import annotations

import re
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.models import User, UserRole
from app.security.passwords import hash_password, validate_password_strength, verify_password
from app.security.sessions import revoke_user_sessions
from app.services.errors import NotFoundError

USERNAME_RE = re.compile(r'^[A-Za-z0-9_]{3,50}$')
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

PROFILE_FIELDS = ('full_name', 'rank', 'email', 'department')
ADMIN_EDITABLE_FIELDS = ('full_name', 'rank', 'service_number', 'email', 'department', 'role')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_role(value) -> UserRole:
    try:
        return UserRole(value.value if hasattr(value, 'value') else value)
    except ValueError as exc:
        raise ValueError(f'Invalid role: {value}') from exc


def validate_username(username: str) -> str:
    username = (username or '').strip()
    if not USERNAME_RE.match(username):
        raise ValueError('Username must be 3-50 characters of letters, digits or underscores')
    return username


def _validate_email(db: Session, email: str | None, *, exclude_user_id: int | None = None) -> str | None:
    email = _clean(email)
    if email is None:
        return None
    email = email.lower()
    if not EMAIL_RE.match(email):
        raise ValueError('Invalid email address')
    conditions = [func.lower(User.email) == email]
    if exclude_user_id is not None:
        conditions.append(User.id != exclude_user_id)
    if db.execute(select(User.id).where(*conditions)).first():
        raise ValueError('Email is already in use')
    return email


def serialize_user(user: User) -> dict:
    return {
        'id': user.id,
        'username': user.username,
        'full_name': user.full_name,
        'rank': user.rank,
        'service_number': user.service_number,
        'role': user.role.value,
        'email': user.email,
        'department': user.department,
        'is_active': user.is_active,
        'last_login': user.last_login,
        'created_at': user.created_at,
        'updated_at': user.updated_at,
    }


def get_user(db: Session, *, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError('User not found')
    return user


def get_user_by_username(db: Session, *, username: str) -> User | None:
    return db.execute(select(User).where(func.lower(User.username) == username.strip().lower())).scalar_one_or_none()


def user_names(db: Session, user_ids) -> dict[int, str]:
    ids = {user_id for user_id in user_ids if user_id}
    if not ids:
        return {}
    rows = db.execute(select(User.id, User.full_name).where(User.id.in_(ids))).all()
    return {user_id: full_name for user_id, full_name in rows}


def list_users(
    db: Session,
    *,
    role: str | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    limit: int = 100,
) -> list[User]:
    conditions = []
    if role:
        conditions.append(User.role == _parse_role(role))
    if is_active is not None:
        conditions.append(User.is_active.is_(is_active))
    if search and search.strip():
        pattern = f'%{search.strip()}%'
        conditions.append(or_(User.username.ilike(pattern), User.full_name.ilike(pattern)))
    return list(
        db.execute(select(User).where(*conditions).order_by(User.full_name.asc(), User.id.asc()).limit(limit))
        .scalars()
        .all()
    )


def list_verifying_officers(db: Session) -> list[User]:
    return list(
        db.execute(
            select(User)
            .where(User.is_active.is_(True), User.role.in_([UserRole.ADMIN, UserRole.SUPER_ADMIN]))
            .order_by(User.full_name.asc())
        )
        .scalars()
        .all()
    )


def create_user(
    db: Session,
    *,
    username: str,
    password: str,
    full_name: str,
    role: str = UserRole.SEMI_USER.value,
    rank: str | None = None,
    service_number: str | None = None,
    email: str | None = None,
    department: str | None = None,
) -> User:
    username = validate_username(username)
    if get_user_by_username(db, username=username):
        raise ValueError('Username already exists')
    full_name = _clean(full_name)
    if not full_name:
        raise ValueError('Full name is required')
    validate_password_strength(password)

    user = User(
        username=username,
        password_hash=hash_password(password),
        full_name=full_name,
        role=_parse_role(role),
        rank=_clean(rank),
        service_number=_clean(service_number),
        email=_validate_email(db, email),
        department=_clean(department),
        is_active=True,
    )
    db.add(user)
    db.flush()
    return user


def update_user(db: Session, *, user_id: int, actor_id: int, changes: dict) -> tuple[User, dict]:
    """Apply admin edits; returns the user and the previous values of changed fields."""
    user = get_user(db, user_id=user_id)
    previous: dict = {}
    for field in ADMIN_EDITABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == 'role':
            value = _parse_role(value)
            if user.id == actor_id and value != user.role:
                raise PermissionError('You cannot change your own role')
        elif field == 'email':
            value = _validate_email(db, value, exclude_user_id=user.id)
        elif field == 'full_name':
            value = _clean(value)
            if not value:
                raise ValueError('Full name is required')
        else:
            value = _clean(value)
        current = getattr(user, field)
        if current != value:
            previous[field] = current.value if hasattr(current, 'value') else current
            setattr(user, field, value)
    if previous:
        user.updated_at = _now()
    db.flush()
    return user, previous


def set_user_active(db: Session, *, user_id: int, actor_id: int, active: bool) -> User:
    if user_id == actor_id:
        raise PermissionError('You cannot change the active status of your own account')
    user = get_user(db, user_id=user_id)
    user.is_active = active
    user.updated_at = _now()
    if not active:
        revoke_user_sessions(db, user.id)
    db.flush()
    return user


def reset_password(db: Session, *, user_id: int, actor_id: int, new_password: str) -> User:
    if user_id == actor_id:
        raise PermissionError('Use change password to update your own password')
    user = get_user(db, user_id=user_id)
    validate_password_strength(new_password)
    user.password_hash = hash_password(new_password)
    user.updated_at = _now()
    revoke_user_sessions(db, user.id)
    db.flush()
    return user


def restore_super_admin(db: Session, *, username: str, new_password: str) -> User:
    """Recover a locked-out account from the command line.

    Sets a new password, reactivates the account, forces the super_admin role
    and ends every open session of that user.
    """
    user = get_user_by_username(db, username=username)
    if not user:
        raise NotFoundError(f'User {username!r} not found')
    validate_password_strength(new_password)
    user.password_hash = hash_password(new_password)
    user.role = UserRole.SUPER_ADMIN
    user.is_active = True
    user.updated_at = _now()
    revoke_user_sessions(db, user.id)
    db.flush()
    return user


def update_profile(db: Session, *, user_id: int, changes: dict) -> User:
    user = get_user(db, user_id=user_id)
    for field in PROFILE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == 'email':
            value = _validate_email(db, value, exclude_user_id=user.id)
        elif field == 'full_name':
            value = _clean(value)
            if not value:
                raise ValueError('Full name is required')
        else:
            value = _clean(value)
        setattr(user, field, value)
    user.updated_at = _now()
    db.flush()
    return user


def change_password(db: Session, *, user_id: int, current_password: str, new_password: str) -> User:
    user = get_user(db, user_id=user_id)
    if not verify_password(current_password, user.password_hash):
        raise ValueError('Current password is incorrect')
    if current_password == new_password:
        raise ValueError('New password must differ from the current password')
    validate_password_strength(new_password)
    user.password_hash = hash_password(new_password)
    user.updated_at = _now()
    db.flush()
    return user


def record_login(db: Session, *, user: User) -> None:
    user.last_login = _now()
    db.flush()
