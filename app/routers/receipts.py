from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, get_current_principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_templates, get_user_agent, service_error
from app.models import ReceiptStatus
from app.schemas import Nomination, ReceiptCreate, ReceiptDecision, ReceiptUpdate
from app.services.audit_service import log_audit, receipt_trail
from app.services.document_service import (
    delete_document,
    document_path,
    get_document,
    store_document,
    stored_file_path,
)
from app.services.receipt_service import (
    HEADER_FIELDS,
    create_receipt,
    delete_receipt,
    get_receipt,
    get_receipt_for_actor,
    list_receipts,
    list_workflow,
    nominate_verifier,
    receipt_detail,
    receipt_stats,
    serialize_receipt,
    serialize_receipt_lines,
    transition_receipt,
    update_receipt,
)

router = APIRouter(prefix='/api/receipts', tags=['receipts'])

RECEIPT_VIEW_PERMISSIONS = (Permission.CREATE_RECEIPT, Permission.VIEW_ALL_RECEIPTS, Permission.VERIFY_RECEIPT)

receipt_creator = require_permission(Permission.CREATE_RECEIPT)
receipt_verifier = require_permission(Permission.VERIFY_RECEIPT)
audit_access = require_permission(Permission.VIEW_AUDIT)


def receipt_access(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not any(principal.can(permission) for permission in RECEIPT_VIEW_PERMISSIONS):
        raise HTTPException(status_code=403, detail='Insufficient permissions')
    return principal


def _audit(db: Session, request: Request, principal: Principal, action: str, receipt_id: int, **values) -> None:
    log_audit(
        db,
        actor_user_id=principal.id,
        action=action,
        table_name='stock_receipts',
        record_id=receipt_id,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
        **values,
    )


@router.get('')
def receipts_list(
    status: list[str] | None = Query(default=None),
    received_by: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
    principal: Principal = Depends(receipt_access),
    db: Session = Depends(get_db),
):
    try:
        receipts, total = list_receipts(
            db,
            actor_id=principal.id,
            actor_role=principal.role,
            statuses=status,
            received_by=received_by,
            date_from=date_from,
            date_to=date_to,
            search=search,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise service_error(exc) from exc
    return {
        'data': [serialize_receipt(db, receipt) for receipt in receipts],
        'count': len(receipts),
        'total': total,
        'limit': limit,
        'offset': offset,
    }


@router.get('/stats')
def receipts_stats(principal: Principal = Depends(receipt_access), db: Session = Depends(get_db)):
    return receipt_stats(db, actor_role=principal.role)


@router.get('/{receipt_id}')
def receipt_get(receipt_id: int, principal: Principal = Depends(receipt_access), db: Session = Depends(get_db)):
    try:
        receipt = get_receipt_for_actor(db, receipt_id=receipt_id, actor_id=principal.id, actor_role=principal.role)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return receipt_detail(db, receipt, actor_id=principal.id, actor_role=principal.role)


@router.post('', status_code=201)
def receipt_create(
    body: ReceiptCreate,
    request: Request,
    principal: Principal = Depends(receipt_creator),
    db: Session = Depends(get_db),
):
    header = body.model_dump(include=set(HEADER_FIELDS))
    try:
        receipt = create_receipt(
            db,
            actor_id=principal.id,
            header=header,
            items=[line.model_dump() for line in body.items],
            save_as=body.save_as,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(
        db,
        request,
        principal,
        'RECEIPT_CREATED',
        receipt.id,
        new_value={'status': receipt.status.value, 'challan_number': receipt.challan_number},
    )
    db.commit()
    return receipt_detail(db, receipt, actor_id=principal.id, actor_role=principal.role)


@router.put('/{receipt_id}')
def receipt_update(
    receipt_id: int,
    body: ReceiptUpdate,
    request: Request,
    principal: Principal = Depends(receipt_creator),
    db: Session = Depends(get_db),
):
    header = body.model_dump(exclude_unset=True, exclude={'items'})
    items = [line.model_dump() for line in body.items] if body.items is not None else None
    try:
        receipt = update_receipt(db, receipt_id=receipt_id, actor_id=principal.id, header=header, items=items)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(db, request, principal, 'RECEIPT_UPDATED', receipt.id, new_value=header)
    db.commit()
    return receipt_detail(db, receipt, actor_id=principal.id, actor_role=principal.role)


@router.delete('/{receipt_id}')
def receipt_delete(
    receipt_id: int,
    request: Request,
    principal: Principal = Depends(receipt_creator),
    db: Session = Depends(get_db),
):
    try:
        delete_receipt(db, receipt_id=receipt_id, actor_id=principal.id)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(db, request, principal, 'RECEIPT_DELETED', receipt_id)
    db.commit()
    return {'message': 'Receipt deleted'}


def _transition(
    db: Session,
    request: Request,
    principal: Principal,
    *,
    receipt_id: int,
    action: str,
    comments: str | None,
    expected_status: ReceiptStatus,
) -> dict:
    try:
        if get_receipt(db, receipt_id=receipt_id).status != expected_status:
            raise ValueError(f'Receipt is not in {expected_status.value} status')
        receipt = transition_receipt(
            db,
            receipt_id=receipt_id,
            actor_id=principal.id,
            actor_role=principal.role,
            action=action,
            comments=comments,
        )
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(
        db,
        request,
        principal,
        f'RECEIPT_{receipt.status.value.upper()}',
        receipt.id,
        old_value={'status': expected_status.value},
        new_value={'status': receipt.status.value, 'grn_number': receipt.grn_number, 'comments': comments},
    )
    db.commit()
    return receipt_detail(db, receipt, actor_id=principal.id, actor_role=principal.role)


@router.post('/{receipt_id}/submit')
def receipt_submit(
    receipt_id: int,
    request: Request,
    principal: Principal = Depends(receipt_creator),
    db: Session = Depends(get_db),
):
    return _transition(
        db,
        request,
        principal,
        receipt_id=receipt_id,
        action='submit',
        comments=None,
        expected_status=ReceiptStatus.DRAFT,
    )


@router.post('/{receipt_id}/verify')
def receipt_verify(
    receipt_id: int,
    body: ReceiptDecision,
    request: Request,
    principal: Principal = Depends(receipt_verifier),
    db: Session = Depends(get_db),
):
    if body.action not in {'verify', 'reject'}:
        raise HTTPException(status_code=400, detail='Invalid action')
    return _transition(
        db,
        request,
        principal,
        receipt_id=receipt_id,
        action=body.action,
        comments=body.comments,
        expected_status=ReceiptStatus.SUBMITTED,
    )


@router.post('/{receipt_id}/approve')
def receipt_approve(
    receipt_id: int,
    body: ReceiptDecision,
    request: Request,
    principal: Principal = Depends(require_permission(Permission.APPROVE_RECEIPT)),
    db: Session = Depends(get_db),
):
    if body.action not in {'approve', 'reject'}:
        raise HTTPException(status_code=400, detail='Invalid action')
    return _transition(
        db,
        request,
        principal,
        receipt_id=receipt_id,
        action=body.action,
        comments=body.comments,
        expected_status=ReceiptStatus.VERIFIED,
    )


@router.post('/{receipt_id}/nominate')
def receipt_nominate(
    receipt_id: int,
    body: Nomination,
    request: Request,
    principal: Principal = Depends(receipt_verifier),
    db: Session = Depends(get_db),
):
    try:
        receipt = nominate_verifier(db, receipt_id=receipt_id, actor_id=principal.id, nominee_id=body.nominee_id)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(db, request, principal, 'RECEIPT_NOMINATED', receipt.id, new_value={'nominated_to': body.nominee_id})
    db.commit()
    return receipt_detail(db, receipt, actor_id=principal.id, actor_role=principal.role)


@router.get('/{receipt_id}/workflow')
def receipt_workflow(receipt_id: int, principal: Principal = Depends(receipt_access), db: Session = Depends(get_db)):
    try:
        get_receipt_for_actor(db, receipt_id=receipt_id, actor_id=principal.id, actor_role=principal.role)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return {'data': list_workflow(db, receipt_id=receipt_id)}


@router.get('/{receipt_id}/audit')
def receipt_audit(receipt_id: int, principal: Principal = Depends(audit_access), db: Session = Depends(get_db)):
    try:
        get_receipt(db, receipt_id=receipt_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': receipt_trail(db, receipt_id=receipt_id)}


@router.post('/{receipt_id}/documents', status_code=201)
def receipt_document_upload(
    receipt_id: int,
    request: Request,
    file: UploadFile = File(...),
    principal: Principal = Depends(receipt_access),
    db: Session = Depends(get_db),
):
    try:
        receipt = get_receipt(db, receipt_id=receipt_id)
        if receipt.received_by != principal.id and not principal.can(Permission.VERIFY_RECEIPT):
            raise PermissionError('Access denied')
        document = store_document(
            db,
            stream=file.file,
            file_name=file.filename,
            content_type=file.content_type,
            uploaded_by=principal.id,
            receipt_id=receipt.id,
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
            receipt_id,
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


@router.get('/{receipt_id}/documents/{document_id}')
def receipt_document_download(
    receipt_id: int,
    document_id: int,
    principal: Principal = Depends(receipt_access),
    db: Session = Depends(get_db),
):
    try:
        get_receipt_for_actor(db, receipt_id=receipt_id, actor_id=principal.id, actor_role=principal.role)
        document = get_document(db, document_id=document_id)
        if document.receipt_id != receipt_id:
            raise HTTPException(status_code=404, detail='Document not found')
        path = document_path(document)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return FileResponse(path, media_type=document.file_type, filename=document.file_name)


@router.delete('/{receipt_id}/documents/{document_id}')
def receipt_document_delete(
    receipt_id: int,
    document_id: int,
    request: Request,
    principal: Principal = Depends(receipt_access),
    db: Session = Depends(get_db),
):
    try:
        receipt = get_receipt(db, receipt_id=receipt_id)
        document = get_document(db, document_id=document_id)
        if document.receipt_id != receipt.id:
            raise HTTPException(status_code=404, detail='Document not found')
        if document.uploaded_by != principal.id and not principal.can(Permission.VERIFY_RECEIPT):
            raise PermissionError('Access denied')
        if receipt.status == ReceiptStatus.APPROVED:
            raise ValueError('Documents of approved receipts cannot be deleted')
        file_path = delete_document(db, document=document)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc

    _audit(db, request, principal, 'DOCUMENT_DELETED', receipt_id, old_value={'document_id': document_id})
    db.commit()
    file_path.unlink(missing_ok=True)
    return {'message': 'Document deleted'}


@router.get('/{receipt_id}/voucher')
def receipt_voucher(
    receipt_id: int,
    request: Request,
    principal: Principal = Depends(receipt_access),
    db: Session = Depends(get_db),
    templates: Jinja2Templates = Depends(get_templates),
):
    try:
        receipt = get_receipt_for_actor(db, receipt_id=receipt_id, actor_id=principal.id, actor_role=principal.role)
    except (ValueError, PermissionError) as exc:
        raise service_error(exc) from exc
    return templates.TemplateResponse(
        request,
        'receipt_voucher.html',
        {
            'receipt': serialize_receipt(db, receipt),
            'lines': serialize_receipt_lines(db, receipt),
            'printed_by': principal.full_name,
        },
    )
