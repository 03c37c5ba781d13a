from __future__ import annotations

import csv
import json
from datetime import date
from io import StringIO

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent
from app.services.audit_service import list_audit_logs, log_audit

router = APIRouter(prefix='/api/audit', tags=['audit'])

audit_access = require_permission(Permission.VIEW_AUDIT)


@router.get('')
def audit_list(
    user_id: int | None = None,
    action: str | None = None,
    table_name: str | None = None,
    record_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
):
    rows = list_audit_logs(
        db,
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=record_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return {'data': rows, 'count': len(rows), 'limit': limit, 'offset': offset}


@router.get('/export.csv')
def audit_export(
    request: Request,
    user_id: int | None = None,
    action: str | None = None,
    table_name: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    principal: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
):
    rows = list_audit_logs(
        db,
        user_id=user_id,
        action=action,
        table_name=table_name,
        date_from=date_from,
        date_to=date_to,
        limit=1000,
    )

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(['Timestamp', 'Username', 'Action', 'Table', 'Record', 'Old Value', 'New Value', 'IP Address'])
    for row in rows:
        writer.writerow(
            [
                row['created_at'].isoformat() if row['created_at'] else '',
                row['username'] or '',
                row['action'],
                row['table_name'] or '',
                row['record_id'] or '',
                json.dumps(row['old_value']) if row['old_value'] is not None else '',
                json.dumps(row['new_value']) if row['new_value'] is not None else '',
                row['ip_address'] or '',
            ]
        )

    log_audit(
        db,
        actor_user_id=principal.id,
        action='AUDIT_LOG_EXPORTED_CSV',
        new_value={'rows': len(rows)},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()

    sio.seek(0)
    return StreamingResponse(
        iter([sio.getvalue()]),
        media_type='text/csv',
        headers={'Content-Disposition': 'attachment; filename=audit-log.csv'},
    )
