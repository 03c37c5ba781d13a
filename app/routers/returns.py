from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent, service_error
from app.schemas import ReturnCreate, ReturnDecision
from app.services.audit_service import log_audit
from app.services.return_service import (
    accept_return,
    create_return,
    list_holdings,
    list_returns,
    reject_return,
    return_summary,
)

router = APIRouter(prefix='/api/returns', tags=['returns'])

holder_access = require_permission(Permission.VIEW_OWN_REQUISITIONS)
return_clerk = require_permission(Permission.ACCEPT_RETURNS)


@router.get('')
def returns_list(
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(holder_access),
    db: Session = Depends(get_db),
):
    try:
        rows = list_returns(
            db, actor_id=principal.id, actor_role=principal.role, status=status, limit=limit, offset=offset
        )
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': rows, 'count': len(rows)}


@router.get('/holdings')
def holdings(principal: Principal = Depends(holder_access), db: Session = Depends(get_db)):
    rows = list_holdings(db, user_id=principal.id)
    return {'data': rows, 'count': len(rows)}


@router.post('', status_code=201)
def return_create(
    body: ReturnCreate,
    request: Request,
    principal: Principal = Depends(holder_access),
    db: Session = Depends(get_db),
):
    try:
        item_return = create_return(db, actor_id=principal.id, **body.model_dump())
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='RETURN_CREATED',
        table_name='returns',
        record_id=item_return.id,
        new_value={
            'return_number': item_return.return_number,
            'issuance_id': item_return.issuance_id,
            'quantity': item_return.quantity,
            'condition': item_return.condition.value,
        },
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return return_summary(db, item_return)


@router.post('/{return_id}/decision')
def return_decision(
    return_id: int,
    body: ReturnDecision,
    request: Request,
    principal: Principal = Depends(return_clerk),
    db: Session = Depends(get_db),
):
    try:
        if body.action == 'accept':
            item_return = accept_return(db, return_id=return_id, actor_id=principal.id, notes=body.notes)
        else:
            item_return = reject_return(db, return_id=return_id, actor_id=principal.id, reason=body.reason)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='RETURN_ACCEPTED' if body.action == 'accept' else 'RETURN_REJECTED',
        table_name='returns',
        record_id=item_return.id,
        old_value={'status': 'pending'},
        new_value={'status': item_return.status.value, 'reason': body.reason},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return return_summary(db, item_return)
