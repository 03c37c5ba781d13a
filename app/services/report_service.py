from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.auth import Permission, Role, has_permission
from app.models import (
    AllocationStatus,
    AuditLog,
    Item,
    ItemAllocation,
    ItemReturn,
    ReceiptItem,
    ReceiptStatus,
    Requisition,
    RequisitionStatus,
    ReturnStatus,
    StockReceipt,
    User,
)
from app.services.item_service import ZERO, get_item, parse_category, serialize_item, stock_status
from app.services.receipt_service import receipt_total_value, serialize_receipt
from app.services.user_service import user_names


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def receipt_register(
    db: Session,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
    item_category: str | None = None,
    limit: int = 100,
) -> list[dict]:
    conditions = []
    if date_from:
        conditions.append(StockReceipt.receipt_date >= date_from)
    if date_to:
        conditions.append(StockReceipt.receipt_date <= date_to)
    if status:
        try:
            conditions.append(StockReceipt.status == ReceiptStatus(status))
        except ValueError as exc:
            raise ValueError(f'Invalid receipt status: {status}') from exc
    if item_category:
        category = parse_category(item_category)
        matching = (
            select(ReceiptItem.receipt_id)
            .outerjoin(Item, Item.id == ReceiptItem.item_id)
            .where(or_(Item.category == category, ReceiptItem.category == category))
        )
        conditions.append(StockReceipt.id.in_(matching))

    receipts = (
        db.execute(
            select(StockReceipt)
            .where(*conditions)
            .order_by(StockReceipt.receipt_date.desc(), StockReceipt.id.desc())
            .limit(min(max(limit, 1), 5000))
        )
        .scalars()
        .all()
    )
    ids = set()
    for receipt in receipts:
        ids.update({receipt.received_by, receipt.verified_by, receipt.approved_by, receipt.nominated_to})
    names = user_names(db, ids)
    return [serialize_receipt(db, receipt, names=names) for receipt in receipts]


def item_history(
    db: Session,
    *,
    item_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int | None = None,
) -> dict:
    item = get_item(db, item_id=item_id)
    conditions = [ReceiptItem.item_id == item.id]
    if date_from:
        conditions.append(StockReceipt.receipt_date >= date_from)
    if date_to:
        conditions.append(StockReceipt.receipt_date <= date_to)

    query = (
        select(StockReceipt, ReceiptItem, User.full_name)
        .join(ReceiptItem, ReceiptItem.receipt_id == StockReceipt.id)
        .join(User, User.id == StockReceipt.received_by)
        .where(*conditions)
        .order_by(StockReceipt.receipt_date.desc(), StockReceipt.id.desc())
    )
    if limit:
        query = query.limit(limit)

    receipts = [
        {
            'receipt_id': receipt.id,
            'grn_number': receipt.grn_number,
            'receipt_date': receipt.receipt_date,
            'challan_number': receipt.challan_number,
            'supplier_name': receipt.supplier_name,
            'status': receipt.status.value,
            'challan_quantity': line.challan_quantity,
            'received_quantity': line.received_quantity,
            'unit_rate': line.unit_rate,
            'total_value': line.total_value,
            'received_by_name': full_name,
        }
        for receipt, line, full_name in db.execute(query).all()
    ]
    return {'item': serialize_item(item), 'receipts': receipts, 'count': len(receipts)}


def stock_summary(db: Session, *, category: str | None = None, include_inactive: bool = False) -> dict:
    conditions = []
    if category:
        conditions.append(Item.category == parse_category(category))
    if not include_inactive:
        conditions.append(Item.is_active.is_(True))
    items = db.execute(select(Item).where(*conditions).order_by(Item.item_code.asc())).scalars().all()

    rows = []
    total_value = ZERO
    status_counts: dict[str, int] = defaultdict(int)
    for item in items:
        value = (item.current_stock or ZERO) * (item.unit_price or ZERO)
        total_value += value
        status = stock_status(item)
        status_counts[status] += 1
        rows.append(
            {
                'item_id': item.id,
                'item_code': item.item_code,
                'nomenclature': item.nomenclature,
                'category': item.category.value,
                'unit_of_measure': item.unit_of_measure,
                'current_stock': item.current_stock,
                'allocated_stock': item.allocated_stock,
                'available_stock': item.available_stock,
                'reorder_level': item.reorder_level,
                'unit_price': item.unit_price,
                'stock_value': value,
                'stock_status': status,
                'location': item.location,
            }
        )
    return {
        'items': rows,
        'totals': {
            'item_count': len(rows),
            'stock_value': total_value,
            'by_status': dict(status_counts),
        },
    }


def requisition_summary(db: Session, *, date_from: date | None = None, date_to: date | None = None) -> dict:
    conditions = []
    if date_from:
        conditions.append(Requisition.created_at >= datetime.combine(date_from, datetime.min.time(), tzinfo=timezone.utc))
    if date_to:
        conditions.append(
            Requisition.created_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
        )

    by_status = db.execute(
        select(Requisition.status, func.count(Requisition.id), func.coalesce(func.sum(Requisition.total_value), 0))
        .where(*conditions)
        .group_by(Requisition.status)
    ).all()
    by_department = db.execute(
        select(Requisition.department, func.count(Requisition.id), func.coalesce(func.sum(Requisition.total_value), 0))
        .where(*conditions)
        .group_by(Requisition.department)
    ).all()
    return {
        'by_status': sorted(
            (
                {'status': status.value, 'count': count, 'total_value': Decimal(str(total))}
                for status, count, total in by_status
            ),
            key=lambda row: row['status'],
        ),
        'by_department': sorted(
            (
                {'department': department or 'Unassigned', 'count': count, 'total_value': Decimal(str(total))}
                for department, count, total in by_department
            ),
            key=lambda row: row['department'],
        ),
        'total': sum(count for _, count, _ in by_status),
    }


def pending_approvals(db: Session, *, kind: str, limit: int = 50) -> list[dict]:
    status_by_kind = {'verification': ReceiptStatus.SUBMITTED, 'approval': ReceiptStatus.VERIFIED}
    if kind not in status_by_kind:
        raise ValueError('type must be verification or approval')
    receipts = (
        db.execute(
            select(StockReceipt)
            .where(StockReceipt.status == status_by_kind[kind])
            .order_by(StockReceipt.submitted_at.asc(), StockReceipt.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    ids = set()
    for receipt in receipts:
        ids.update({receipt.received_by, receipt.verified_by, receipt.nominated_to})
    names = user_names(db, ids)
    return [serialize_receipt(db, receipt, names=names) for receipt in receipts]


def system_stats(db: Session) -> dict:
    users_by_role = db.execute(
        select(User.role, func.count(User.id)).where(User.is_active.is_(True)).group_by(User.role)
    ).all()
    receipts_by_status = db.execute(
        select(StockReceipt.status, func.count(StockReceipt.id)).group_by(StockReceipt.status)
    ).all()
    items_by_category = db.execute(
        select(Item.category, func.count(Item.id)).where(Item.is_active.is_(True)).group_by(Item.category)
    ).all()
    since = _now() - timedelta(days=7)
    recent_activity = db.execute(
        select(AuditLog.action, func.count(AuditLog.id), func.max(AuditLog.created_at))
        .where(AuditLog.created_at >= since)
        .group_by(AuditLog.action)
        .order_by(func.max(AuditLog.created_at).desc())
    ).all()
    return {
        'users': {
            'total': sum(count for _, count in users_by_role),
            'by_role': sorted(({'role': role.value, 'count': count} for role, count in users_by_role), key=lambda r: r['role']),
        },
        'receipts': {
            'total': sum(count for _, count in receipts_by_status),
            'by_status': sorted(
                ({'status': status.value, 'count': count} for status, count in receipts_by_status),
                key=lambda r: r['status'],
            ),
        },
        'items': {
            'total': sum(count for _, count in items_by_category),
            'by_category': sorted(
                ({'category': category.value, 'count': count} for category, count in items_by_category),
                key=lambda r: r['category'],
            ),
        },
        'recent_activity': [
            {'action': action, 'count': count, 'latest_activity': latest} for action, count, latest in recent_activity
        ],
    }


def _count(db: Session, model_id, *conditions) -> int:
    return db.execute(select(func.count(model_id)).where(*conditions)).scalar_one()


def dashboard(db: Session, *, actor_id: int, actor_role: Role | str) -> dict:
    """Headline numbers; each block only appears for roles that act on it."""
    data: dict = {
        'my_requisitions': {
            'pending': _count(
                db,
                Requisition.id,
                Requisition.requester_id == actor_id,
                Requisition.status == RequisitionStatus.PENDING,
            ),
            'ready_for_pickup': _count(
                db,
                Requisition.id,
                Requisition.requester_id == actor_id,
                Requisition.status == RequisitionStatus.READY_FOR_PICKUP,
            ),
            'total': _count(db, Requisition.id, Requisition.requester_id == actor_id),
        },
        'my_holdings': _count(
            db,
            ItemAllocation.id,
            ItemAllocation.allocated_to == actor_id,
            ItemAllocation.status == AllocationStatus.ACTIVE,
        ),
    }

    if has_permission(actor_role, Permission.CREATE_RECEIPT):
        data['my_receipts'] = {
            status.value: _count(db, StockReceipt.id, StockReceipt.received_by == actor_id, StockReceipt.status == status)
            for status in ReceiptStatus
        }
    if has_permission(actor_role, Permission.VERIFY_RECEIPT):
        data['pending_verifications'] = _count(db, StockReceipt.id, StockReceipt.status == ReceiptStatus.SUBMITTED)
    if has_permission(actor_role, Permission.APPROVE_RECEIPT):
        data['pending_receipt_approvals'] = _count(db, StockReceipt.id, StockReceipt.status == ReceiptStatus.VERIFIED)
    if has_permission(actor_role, Permission.APPROVE_REQUISITION):
        data['pending_requisition_approvals'] = _count(
            db, Requisition.id, Requisition.status == RequisitionStatus.PENDING
        )
    if has_permission(actor_role, Permission.ISSUE_ITEMS):
        data['awaiting_issue'] = _count(
            db,
            Requisition.id,
            Requisition.status.in_([RequisitionStatus.APPROVED, RequisitionStatus.READY_FOR_PICKUP]),
        )
    if has_permission(actor_role, Permission.ACCEPT_RETURNS):
        data['pending_returns'] = _count(db, ItemReturn.id, ItemReturn.status == ReturnStatus.PENDING)
    if has_permission(actor_role, Permission.VIEW_REPORTS):
        available = Item.current_stock - Item.allocated_stock
        data['catalog'] = {
            'active_items': _count(db, Item.id, Item.is_active.is_(True)),
            'low_stock': _count(db, Item.id, Item.is_active.is_(True), available <= Item.reorder_level),
            'out_of_stock': _count(db, Item.id, Item.is_active.is_(True), available <= 0),
        }
        approved = db.execute(
            select(StockReceipt).where(StockReceipt.status == ReceiptStatus.APPROVED)
        ).scalars().all()
        data['approved_receipt_value'] = sum((receipt_total_value(receipt) for receipt in approved), ZERO)
    return data
