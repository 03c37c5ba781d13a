from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent, service_error
from app.schemas import PasswordReset, UserCreate, UserUpdate
from app.services.audit_service import list_audit_logs, log_audit
from app.services.user_service import (
    create_user,
    get_user,
    list_users,
    list_verifying_officers,
    reset_password,
    serialize_user,
    set_user_active,
    update_user,
)

router = APIRouter(prefix='/api/users', tags=['users'])

user_admin = require_permission(Permission.MANAGE_USERS)
verifier_lookup = require_permission(Permission.VERIFY_RECEIPT)


@router.get('')
def users_list(
    role: str | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    limit: int = 100,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    try:
        users = list_users(db, role=role, is_active=is_active, search=search, limit=limit)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': [serialize_user(user) for user in users], 'count': len(users)}


@router.get('/verifying-officers')
def verifying_officers(principal: Principal = Depends(verifier_lookup), db: Session = Depends(get_db)):
    officers = list_verifying_officers(db)
    return {
        'data': [
            {'id': user.id, 'full_name': user.full_name, 'rank': user.rank, 'role': user.role.value}
            for user in officers
        ]
    }


@router.get('/{user_id}')
def user_detail(user_id: int, principal: Principal = Depends(user_admin), db: Session = Depends(get_db)):
    try:
        user = get_user(db, user_id=user_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return serialize_user(user)


@router.post('', status_code=201)
def user_create(
    body: UserCreate,
    request: Request,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    try:
        user = create_user(db, **body.model_dump())
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='USER_CREATED',
        table_name='users',
        record_id=user.id,
        new_value={'username': user.username, 'role': user.role.value},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_user(user)


@router.put('/{user_id}')
def user_update(
    user_id: int,
    body: UserUpdate,
    request: Request,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    changes = body.model_dump(exclude_unset=True)
    try:
        user, previous = update_user(db, user_id=user_id, actor_id=principal.id, changes=changes)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='USER_UPDATED',
        table_name='users',
        record_id=user.id,
        old_value=previous,
        new_value={field: changes[field] for field in previous},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_user(user)


def _set_active(user_id: int, active: bool, request: Request, principal: Principal, db: Session) -> dict:
    try:
        user = set_user_active(db, user_id=user_id, actor_id=principal.id, active=active)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='USER_ACTIVATED' if active else 'USER_DEACTIVATED',
        table_name='users',
        record_id=user.id,
        new_value={'is_active': active},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_user(user)


@router.post('/{user_id}/activate')
def user_activate(
    user_id: int,
    request: Request,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    return _set_active(user_id, True, request, principal, db)


@router.post('/{user_id}/deactivate')
def user_deactivate(
    user_id: int,
    request: Request,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    return _set_active(user_id, False, request, principal, db)


@router.post('/{user_id}/reset-password')
def user_reset_password(
    user_id: int,
    body: PasswordReset,
    request: Request,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    try:
        user = reset_password(db, user_id=user_id, actor_id=principal.id, new_password=body.new_password)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='USER_PASSWORD_RESET',
        table_name='users',
        record_id=user.id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return {'message': 'Password reset'}


@router.get('/{user_id}/activity')
def user_activity(
    user_id: int,
    limit: int = 100,
    principal: Principal = Depends(user_admin),
    db: Session = Depends(get_db),
):
    try:
        get_user(db, user_id=user_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    rows = list_audit_logs(db, user_id=user_id, limit=limit)
    return {'data': rows, 'count': len(rows)}
