from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_templates, get_user_agent, service_error
from app.schemas import IssueRequest, RequisitionAction, RequisitionCreate, RequisitionUpdate
from app.services.audit_service import log_audit
from app.services.document_service import document_path, get_document, store_document, stored_file_path
from app.services.requisition_service import (
    create_requisition,
    get_requisition,
    get_requisition_for_actor,
    issuance_voucher,
    issue_requisition,
    list_requisitions,
    requisition_detail,
    serialize_requisitions,
    transition_requisition,
    update_requisition,
)

router = APIRouter(prefix='/api/requisitions', tags=['requisitions'])

requisition_access = require_permission(Permission.VIEW_OWN_REQUISITIONS)
requisition_creator = require_permission(Permission.CREATE_REQUISITION)
issuer = require_permission(Permission.ISSUE_ITEMS)


def _audit(db: Session, request: Request, principal: Principal, action: str, requisition_id: int, **values) -> None:
    log_audit(
        db,
        actor_user_id=principal.id,
        action=action,
        table_name='requisitions',
        record_id=requisition_id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
        **values,
    )


@router.get('')
def requisitions_list(
    status: str | None = None,
    priority: str | None = None,
    requester_id: int | None = None,
    department: str | None = None,
    search: str | None = None,
    mine: bool = False,
    limit: int = 50,
    offset: int = 0,
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
):
    try:
        requisitions, total = list_requisitions(
            db,
            actor_id=principal.id,
            actor_role=principal.role,
            status=status,
            priority=priority,
            requester_id=requester_id,
            department=department,
            search=search,
            mine=mine,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise service_error(exc) from exc
    return {
        'data': serialize_requisitions(db, requisitions),
        'count': len(requisitions),
        'total': total,
        'limit': limit,
        'offset': offset,
    }


@router.get('/{requisition_id}')
def requisition_get(
    requisition_id: int,
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
):
    try:
        requisition = get_requisition_for_actor(
            db, requisition_id=requisition_id, actor_id=principal.id, actor_role=principal.role
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return requisition_detail(db, requisition, actor_id=principal.id, actor_role=principal.role)


@router.post('', status_code=201)
def requisition_create(
    body: RequisitionCreate,
    request: Request,
    principal: Principal = Depends(requisition_creator),
    db: Session = Depends(get_db),
):
    try:
        requisition = create_requisition(
            db,
            actor_id=principal.id,
            purpose=body.purpose,
            department=body.department,
            request_type=body.request_type,
            priority=body.priority,
            items=[line.model_dump() for line in body.items],
            save_as=body.save_as,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(
        db,
        request,
        principal,
        'REQUISITION_CREATED',
        requisition.id,
        new_value={'requisition_number': requisition.requisition_number, 'status': requisition.status.value},
    )
    db.commit()
    return requisition_detail(db, requisition, actor_id=principal.id, actor_role=principal.role)


@router.put('/{requisition_id}')
def requisition_update(
    requisition_id: int,
    body: RequisitionUpdate,
    request: Request,
    principal: Principal = Depends(requisition_creator),
    db: Session = Depends(get_db),
):
    changes = body.model_dump(exclude_unset=True, exclude={'items'})
    items = [line.model_dump() for line in body.items] if body.items is not None else None
    try:
        requisition = update_requisition(
            db, requisition_id=requisition_id, actor_id=principal.id, changes=changes, items=items
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(db, request, principal, 'REQUISITION_UPDATED', requisition.id, new_value=changes)
    db.commit()
    return requisition_detail(db, requisition, actor_id=principal.id, actor_role=principal.role)


@router.post('/{requisition_id}/actions')
def requisition_action(
    requisition_id: int,
    body: RequisitionAction,
    request: Request,
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
):
    try:
        previous_status = get_requisition(db, requisition_id=requisition_id).status.value
        requisition = transition_requisition(
            db,
            requisition_id=requisition_id,
            actor_id=principal.id,
            actor_role=principal.role,
            action=body.action,
            comments=body.comments,
            approved_quantities=body.approved_quantities,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(
        db,
        request,
        principal,
        f'REQUISITION_{requisition.status.value.upper()}',
        requisition.id,
        old_value={'status': previous_status},
        new_value={'status': requisition.status.value, 'comments': body.comments},
    )
    db.commit()
    return requisition_detail(db, requisition, actor_id=principal.id, actor_role=principal.role)


@router.post('/{requisition_id}/issue')
def requisition_issue(
    requisition_id: int,
    body: IssueRequest,
    request: Request,
    principal: Principal = Depends(issuer),
    db: Session = Depends(get_db),
):
    try:
        issuances = issue_requisition(
            db,
            requisition_id=requisition_id,
            actor_id=principal.id,
            actor_role=principal.role,
            lines=[line.model_dump() for line in body.lines] if body.lines is not None else None,
            expected_return_date=body.expected_return_date,
            gate_pass_number=body.gate_pass_number,
            notes=body.notes,
        )
        requisition = get_requisition(db, requisition_id=requisition_id)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(
        db,
        request,
        principal,
        'REQUISITION_ISSUED',
        requisition.id,
        new_value={
            'issuances': [
                {'issuance_number': issuance.issuance_number, 'item_id': issuance.item_id, 'quantity': issuance.quantity}
                for issuance in issuances
            ]
        },
    )
    db.commit()
    return requisition_detail(db, requisition, actor_id=principal.id, actor_role=principal.role)


@router.post('/{requisition_id}/documents', status_code=201)
def requisition_document_upload(
    requisition_id: int,
    request: Request,
    file: UploadFile = File(...),
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
):
    try:
        requisition = get_requisition(db, requisition_id=requisition_id)
        if requisition.requester_id != principal.id and not principal.can(Permission.APPROVE_REQUISITION):
            raise PermissionError('Access denied')
        document = store_document(
            db,
            stream=file.file,
            file_name=file.filename,
            content_type=file.content_type,
            uploaded_by=principal.id,
            requisition_id=requisition.id,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    finally:
        file.file.close()

    stored_file = stored_file_path(document)
    try:
        _audit(
            db,
            request,
            principal,
            'DOCUMENT_UPLOADED',
            requisition_id,
            new_value={'document_id': document.id, 'file_name': document.file_name},
        )
        db.commit()
    except Exception:
        stored_file.unlink(missing_ok=True)
        raise
    return {
        'id': document.id,
        'file_name': document.file_name,
        'file_type': document.file_type,
        'file_size': document.file_size,
    }


@router.get('/{requisition_id}/documents/{document_id}')
def requisition_document_download(
    requisition_id: int,
    document_id: int,
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
):
    try:
        get_requisition_for_actor(db, requisition_id=requisition_id, actor_id=principal.id, actor_role=principal.role)
        document = get_document(db, document_id=document_id)
        if document.requisition_id != requisition_id:
            raise HTTPException(status_code=404, detail='Document not found')
        path = document_path(document)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return FileResponse(path, media_type=document.file_type, filename=document.file_name)


@router.get('/issuances/{issuance_id}/voucher')
def issuance_voucher_page(
    issuance_id: int,
    request: Request,
    principal: Principal = Depends(requisition_access),
    db: Session = Depends(get_db),
    templates: Jinja2Templates = Depends(get_templates),
):
    try:
        voucher = issuance_voucher(db, issuance_id=issuance_id)
        get_requisition_for_actor(
            db, requisition_id=voucher['requisition'].id, actor_id=principal.id, actor_role=principal.role
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return templates.TemplateResponse(
        request,
        'issue_voucher.html',
        {**voucher, 'printed_by': principal.full_name},
    )
