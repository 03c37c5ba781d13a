from __future__ import annotations

import csv
from datetime import date
from io import StringIO

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, Role, get_current_principal, require_permission, require_role
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent, service_error
from app.services.audit_service import log_audit
from app.services.report_service import (
    dashboard,
    item_history,
    pending_approvals,
    receipt_register,
    requisition_summary,
    stock_summary,
    system_stats,
)

router = APIRouter(prefix='/api/reports', tags=['reports'])

report_access = require_permission(Permission.VIEW_REPORTS)
super_admin_only = require_role(Role.SUPER_ADMIN)


def _csv_response(sio: StringIO, filename: str) -> StreamingResponse:
    sio.seek(0)
    return StreamingResponse(
        iter([sio.getvalue()]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


@router.get('/dashboard')
def dashboard_view(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return dashboard(db, actor_id=principal.id, actor_role=principal.role)


@router.get('/receipt-register')
def receipt_register_view(
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
    item_category: str | None = None,
    limit: int = 100,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        rows = receipt_register(
            db, date_from=date_from, date_to=date_to, status=status, item_category=item_category, limit=limit
        )
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': rows, 'count': len(rows)}


@router.get('/receipt-register/export.csv')
def receipt_register_export(
    request: Request,
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
    item_category: str | None = None,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        rows = receipt_register(
            db, date_from=date_from, date_to=date_to, status=status, item_category=item_category, limit=5000
        )
    except ValueError as exc:
        raise service_error(exc) from exc

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(
        ['GRN', 'Receipt Date', 'Challan No', 'Supplier', 'Received From', 'Status', 'Items', 'Total Value', 'Received By']
    )
    for row in rows:
        writer.writerow(
            [
                row['grn_number'] or '',
                row['receipt_date'],
                row['challan_number'],
                row['supplier_name'] or '',
                row['received_from'],
                row['status'],
                row['item_count'],
                row['total_value'],
                row['received_by_name'] or '',
            ]
        )

    log_audit(
        db,
        actor_user_id=principal.id,
        action='RECEIPT_REGISTER_EXPORTED_CSV',
        new_value={'rows': len(rows), 'date_from': date_from, 'date_to': date_to, 'status': status},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return _csv_response(sio, 'receipt-register.csv')


@router.get('/item-history/{item_id}')
def item_history_view(
    item_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int | None = None,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        return item_history(db, item_id=item_id, date_from=date_from, date_to=date_to, limit=limit)
    except ValueError as exc:
        raise service_error(exc) from exc


@router.get('/item-history/{item_id}/export.csv')
def item_history_export(
    item_id: int,
    request: Request,
    date_from: date | None = None,
    date_to: date | None = None,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        history = item_history(db, item_id=item_id, date_from=date_from, date_to=date_to)
    except ValueError as exc:
        raise service_error(exc) from exc

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(
        [
            'GRN',
            'Receipt Date',
            'Challan No',
            'Supplier',
            'Status',
            'Challan Qty',
            'Received Qty',
            'Unit Rate',
            'Total Value',
            'Received By',
        ]
    )
    for row in history['receipts']:
        writer.writerow(
            [
                row['grn_number'] or '',
                row['receipt_date'],
                row['challan_number'],
                row['supplier_name'] or '',
                row['status'],
                row['challan_quantity'],
                row['received_quantity'],
                row['unit_rate'],
                row['total_value'],
                row['received_by_name'] or '',
            ]
        )

    item_code = history['item']['item_code']
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_HISTORY_EXPORTED_CSV',
        table_name='items_master',
        record_id=item_id,
        new_value={'rows': history['count'], 'date_from': date_from, 'date_to': date_to},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return _csv_response(sio, f'item-history-{item_code}.csv')


@router.get('/stock-summary')
def stock_summary_view(
    category: str | None = None,
    include_inactive: bool = False,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        return stock_summary(db, category=category, include_inactive=include_inactive)
    except ValueError as exc:
        raise service_error(exc) from exc


@router.get('/stock-summary/export.csv')
def stock_summary_export(
    request: Request,
    category: str | None = None,
    include_inactive: bool = False,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        summary = stock_summary(db, category=category, include_inactive=include_inactive)
    except ValueError as exc:
        raise service_error(exc) from exc

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(
        [
            'Item Code',
            'Nomenclature',
            'Category',
            'Unit',
            'Current Stock',
            'Allocated',
            'Available',
            'Reorder Level',
            'Unit Price',
            'Stock Value',
            'Status',
            'Location',
        ]
    )
    for row in summary['items']:
        writer.writerow(
            [
                row['item_code'],
                row['nomenclature'],
                row['category'],
                row['unit_of_measure'],
                row['current_stock'],
                row['allocated_stock'],
                row['available_stock'],
                row['reorder_level'],
                row['unit_price'] if row['unit_price'] is not None else '',
                row['stock_value'],
                row['stock_status'],
                row['location'] or '',
            ]
        )

    log_audit(
        db,
        actor_user_id=principal.id,
        action='STOCK_SUMMARY_EXPORTED_CSV',
        new_value={'rows': len(summary['items']), 'category': category},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return _csv_response(sio, 'stock-summary.csv')


@router.get('/requisition-summary')
def requisition_summary_view(
    date_from: date | None = None,
    date_to: date | None = None,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    return requisition_summary(db, date_from=date_from, date_to=date_to)


@router.get('/pending-approvals')
def pending_approvals_view(
    type: str = 'verification',
    limit: int = 50,
    principal: Principal = Depends(report_access),
    db: Session = Depends(get_db),
):
    try:
        rows = pending_approvals(db, kind=type, limit=limit)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': rows, 'count': len(rows)}


@router.get('/system-stats')
def system_stats_view(principal: Principal = Depends(super_admin_only), db: Session = Depends(get_db)):
    return system_stats(db)
