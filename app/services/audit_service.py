from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditLog, AuthEvent, User


def log_auth_event(
    db: Session,
    *,
    attempted_username: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    user_id: int | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_username=attempted_username,
            success=success,
            failure_reason=failure_reason,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor_user_id: int | None,
    action: str,
    table_name: str | None = None,
    record_id: int | None = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    db.add(
        AuditLog(
            user_id=actor_user_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_value=jsonable_encoder(old_value) if old_value is not None else None,
            new_value=jsonable_encoder(new_value) if new_value is not None else None,
            ip_address=ip,
            user_agent=user_agent,
        )
    )


def _audit_row(log: AuditLog, user: User | None) -> dict:
    return {
        'id': log.id,
        'user_id': log.user_id,
        'username': user.username if user else None,
        'full_name': user.full_name if user else None,
        'action': log.action,
        'table_name': log.table_name,
        'record_id': log.record_id,
        'old_value': log.old_value,
        'new_value': log.new_value,
        'ip_address': log.ip_address,
        'user_agent': log.user_agent,
        'created_at': log.created_at,
    }


def list_audit_logs(
    db: Session,
    *,
    user_id: int | None = None,
    action: str | None = None,
    table_name: str | None = None,
    record_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    conditions = []
    if user_id:
        conditions.append(AuditLog.user_id == user_id)
    if action:
        conditions.append(AuditLog.action == action.upper())
    if table_name:
        conditions.append(AuditLog.table_name == table_name)
    if record_id:
        conditions.append(AuditLog.record_id == record_id)
    if date_from:
        conditions.append(AuditLog.created_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to:
        conditions.append(
            AuditLog.created_at < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )

    rows = db.execute(
        select(AuditLog, User)
        .outerjoin(User, User.id == AuditLog.user_id)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(min(max(limit, 1), 1000))
        .offset(max(offset, 0))
    ).all()
    return [_audit_row(log, user) for log, user in rows]


def receipt_trail(db: Session, *, receipt_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog, User)
        .outerjoin(User, User.id == AuditLog.user_id)
        .where(AuditLog.table_name == 'stock_receipts', AuditLog.record_id == receipt_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
    ).all()
    return [_audit_row(log, user) for log, user in rows]
