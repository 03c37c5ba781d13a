from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.auth import Principal, bearer_token, get_current_principal, permissions_for
from app.config import settings
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent, service_error
from app.schemas import ChangePasswordRequest, LoginRequest, ProfileUpdate
from app.security.csrf import CSRF_COOKIE_NAME
from app.security.passwords import verify_password
from app.security.sessions import create_web_session, revoke_web_session
from app.services.audit_service import log_audit, log_auth_event
from app.services.user_service import (
    change_password,
    get_user,
    get_user_by_username,
    record_login,
    serialize_user,
    update_profile,
)

router = APIRouter(prefix='/api/auth', tags=['auth'])

INVALID_CREDENTIALS = 'Invalid username or password'


def _profile(user) -> dict:
    data = serialize_user(user)
    data['permissions'] = permissions_for(user.role)
    return data


@router.post('/login')
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = body.username.strip()
    ip = get_client_ip(request)
    user_agent = get_user_agent(request)

    user = get_user_by_username(db, username=username)
    failure_reason = None
    if not user:
        failure_reason = 'UNKNOWN_USERNAME'
    elif not user.is_active:
        failure_reason = 'INACTIVE_USER'
    elif not verify_password(body.password, user.password_hash):
        failure_reason = 'BAD_PASSWORD'

    if failure_reason:
        log_auth_event(
            db,
            attempted_username=username,
            success=False,
            failure_reason=failure_reason,
            user_id=user.id if user else None,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)

    token = create_web_session(db, user.id, ip=ip, user_agent=user_agent)
    record_login(db, user=user)
    log_auth_event(
        db,
        attempted_username=username,
        success=True,
        failure_reason=None,
        user_id=user.id,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(
        db,
        actor_user_id=user.id,
        action='AUTH_LOGIN',
        table_name='users',
        record_id=user.id,
        ip=ip,
        user_agent=user_agent,
    )
    db.commit()

    response = JSONResponse(
        jsonable_encoder(
            {
                'token': token,
                'token_type': 'bearer',
                'expires_in': settings.session_ttl_minutes * 60,
                'csrf_token': getattr(request.state, 'csrf_token', None) or request.cookies.get(CSRF_COOKIE_NAME),
                'user': _profile(user),
            }
        )
    )
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/logout')
def logout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    token = bearer_token(request) or request.cookies.get(settings.session_cookie_name)
    if token:
        revoke_web_session(db, token)

    log_audit(
        db,
        actor_user_id=principal.id,
        action='AUTH_LOGOUT',
        table_name='users',
        record_id=principal.id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()

    response = JSONResponse({'message': 'Logged out'})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return _profile(get_user(db, user_id=principal.id))


@router.put('/profile')
def profile_update(
    body: ProfileUpdate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    changes = body.model_dump(exclude_unset=True)
    try:
        user = update_profile(db, user_id=principal.id, changes=changes)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='PROFILE_UPDATED',
        table_name='users',
        record_id=principal.id,
        new_value=changes,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return _profile(user)


@router.post('/change-password')
def password_change(
    body: ChangePasswordRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        change_password(
            db,
            user_id=principal.id,
            current_password=body.current_password,
            new_password=body.new_password,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='PASSWORD_CHANGED',
        table_name='users',
        record_id=principal.id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return {'message': 'Password changed'}
