from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.auth import Permission, Role, has_permission
from app.models import (
    ApprovalWorkflow,
    Item,
    MovementType,
    ReceiptItem,
    ReceiptStatus,
    StockReceipt,
    User,
    UserRole,
)
from app.services.document_service import list_documents
from app.services.errors import NotFoundError
from app.services.item_service import ZERO, create_item, parse_category, post_movement, to_decimal
from app.services.numbering import next_document_number
from app.services.user_service import user_names
from app.services.workflow import RECEIPT_TRANSITIONS, allowed_actions, resolve_transition

logger = logging.getLogger(__name__)

HEADER_FIELDS = (
    'receipt_date',
    'challan_number',
    'challan_date',
    'supplier_name',
    'vehicle_number',
    'iv_number',
    'rv_number',
    'received_from',
    'remarks',
)
SAVE_AS_STATUSES = {'draft': ReceiptStatus.DRAFT, 'submitted': ReceiptStatus.SUBMITTED}
TREND_MONTHS = 12
WORKFLOW_ACTION_LABELS = {
    'submit': 'submitted',
    'verify': 'verified',
    'approve': 'approved',
    'reject': 'rejected',
    'nominate': 'nominated',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_statuses(values) -> list[ReceiptStatus]:
    statuses = []
    for value in values or []:
        for part in str(value.value if hasattr(value, 'value') else value).split(','):
            part = part.strip()
            if not part:
                continue
            try:
                statuses.append(ReceiptStatus(part))
            except ValueError as exc:
                raise ValueError(f'Invalid receipt status: {part}') from exc
    return statuses


def _validate_header(header: dict) -> dict:
    receipt_date = header.get('receipt_date')
    challan_date = header.get('challan_date')
    if not isinstance(receipt_date, date):
        raise ValueError('Receipt date is required')
    if not isinstance(challan_date, date):
        raise ValueError('Challan date is required')
    if receipt_date > _now().date():
        raise ValueError('Receipt date cannot be in the future')
    if challan_date > receipt_date:
        raise ValueError('Challan date cannot be after receipt date')

    cleaned = {field: _clean(header.get(field)) for field in HEADER_FIELDS if field not in {'receipt_date', 'challan_date'}}
    if not cleaned['challan_number']:
        raise ValueError('Challan number is required')
    if not cleaned['supplier_name']:
        raise ValueError('Supplier name is required')
    cleaned['receipt_date'] = receipt_date
    cleaned['challan_date'] = challan_date
    return cleaned


def _validate_lines(db: Session, lines: list[dict]) -> list[dict]:
    if not lines:
        raise ValueError('At least one item is required')

    validated = []
    for index, line in enumerate(lines, start=1):
        challan_quantity = to_decimal(line.get('challan_quantity'), field='challan quantity')
        received_quantity = to_decimal(line.get('received_quantity'), field='received quantity')
        unit_rate = to_decimal(line.get('unit_rate'), field='unit rate')
        if challan_quantity < ZERO or received_quantity < ZERO or unit_rate < ZERO:
            raise ValueError(f'Line {index}: quantities and rates cannot be negative')

        row = {
            'item_id': None,
            'item_name': None,
            'category': None,
            'unit_of_measure': None,
            'challan_quantity': challan_quantity,
            'received_quantity': received_quantity,
            'unit_rate': unit_rate,
            'condition_notes': _clean(line.get('condition_notes')),
        }
        item_id = line.get('item_id')
        if item_id:
            item = db.get(Item, item_id)
            if not item or not item.is_active:
                raise ValueError(f'Line {index}: item not found or inactive')
            row['item_id'] = item.id
        else:
            item_name = _clean(line.get('item_name'))
            unit_of_measure = _clean(line.get('unit_of_measure'))
            if not item_name or not line.get('category') or not unit_of_measure:
                raise ValueError(f'Line {index}: choose a catalog item or give name, category and unit')
            row['item_name'] = item_name
            row['category'] = parse_category(line.get('category'))
            row['unit_of_measure'] = unit_of_measure
        validated.append(row)
    return validated


def _record_workflow(db: Session, *, receipt: StockReceipt, approver_id: int, action: str, comments: str | None) -> None:
    db.add(
        ApprovalWorkflow(
            receipt_id=receipt.id,
            approver_id=approver_id,
            action=WORKFLOW_ACTION_LABELS.get(action, action),
            comments=comments,
        )
    )


def can_view_receipt(receipt: StockReceipt, *, actor_id: int, actor_role: Role | str) -> bool:
    if has_permission(actor_role, Permission.VIEW_ALL_RECEIPTS):
        return True
    return actor_id in {receipt.received_by, receipt.nominated_to}


def get_receipt(db: Session, *, receipt_id: int) -> StockReceipt:
    receipt = db.get(StockReceipt, receipt_id)
    if not receipt:
        raise NotFoundError('Receipt not found')
    return receipt


def get_receipt_for_actor(db: Session, *, receipt_id: int, actor_id: int, actor_role: Role | str) -> StockReceipt:
    receipt = get_receipt(db, receipt_id=receipt_id)
    if not can_view_receipt(receipt, actor_id=actor_id, actor_role=actor_role):
        raise PermissionError('Access denied')
    return receipt


def create_receipt(
    db: Session,
    *,
    actor_id: int,
    header: dict,
    items: list[dict],
    save_as: str = 'draft',
) -> StockReceipt:
    if save_as not in SAVE_AS_STATUSES:
        raise ValueError('save_as must be draft or submitted')
    fields = _validate_header(header)
    lines = _validate_lines(db, items)

    receipt = StockReceipt(received_by=actor_id, status=ReceiptStatus.DRAFT, **fields)
    receipt.items = [ReceiptItem(**line) for line in lines]
    db.add(receipt)
    db.flush()

    if SAVE_AS_STATUSES[save_as] == ReceiptStatus.SUBMITTED:
        receipt.status = ReceiptStatus.SUBMITTED
        receipt.submitted_at = _now()
        _record_workflow(db, receipt=receipt, approver_id=actor_id, action='submit', comments=None)
        db.flush()
    logger.info('receipt %s created by user %s as %s', receipt.id, actor_id, receipt.status.value)
    return receipt


def _ensure_editable(receipt: StockReceipt, actor_id: int) -> None:
    if receipt.received_by != actor_id:
        raise PermissionError('Only the receiving user can modify this receipt')
    if receipt.status != ReceiptStatus.DRAFT:
        raise ValueError('Can only modify draft receipts')


def update_receipt(
    db: Session,
    *,
    receipt_id: int,
    actor_id: int,
    header: dict,
    items: list[dict] | None,
) -> StockReceipt:
    receipt = get_receipt(db, receipt_id=receipt_id)
    _ensure_editable(receipt, actor_id)

    merged = {field: getattr(receipt, field) for field in HEADER_FIELDS}
    merged.update({key: value for key, value in header.items() if key in HEADER_FIELDS})
    fields = _validate_header(merged)
    for field, value in fields.items():
        setattr(receipt, field, value)

    if items is not None:
        lines = _validate_lines(db, items)
        receipt.items.clear()
        db.flush()
        receipt.items.extend(ReceiptItem(**line) for line in lines)

    receipt.updated_at = _now()
    db.flush()
    return receipt


def delete_receipt(db: Session, *, receipt_id: int, actor_id: int) -> None:
    receipt = get_receipt(db, receipt_id=receipt_id)
    _ensure_editable(receipt, actor_id)
    db.delete(receipt)
    db.flush()


def _find_catalog_match(db: Session, line: ReceiptItem) -> Item | None:
    return db.execute(
        select(Item)
        .where(
            func.lower(Item.nomenclature) == (line.item_name or '').lower(),
            Item.category == line.category,
            Item.is_active.is_(True),
        )
        .order_by(Item.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def _post_receipt_stock(db: Session, *, receipt: StockReceipt, actor_id: int) -> None:
    for line in receipt.items:
        if line.item_id is None:
            item = _find_catalog_match(db, line)
            if item is None:
                item = create_item(
                    db,
                    actor_id=actor_id,
                    nomenclature=line.item_name,
                    category=line.category,
                    unit_of_measure=line.unit_of_measure,
                    unit_price=line.unit_rate,
                )
            line.item_id = item.id
        else:
            item = db.get(Item, line.item_id)
            if item is None:
                raise NotFoundError('Receipt item references a missing catalog item')

        if line.received_quantity == ZERO:
            continue
        item.current_stock = (item.current_stock or ZERO) + line.received_quantity
        item.updated_at = _now()
        post_movement(
            db,
            item=item,
            movement_type=MovementType.RECEIPT,
            quantity=line.received_quantity,
            performed_by=actor_id,
            reference_type='stock_receipts',
            reference_id=receipt.id,
            notes=receipt.grn_number,
        )
        logger.info('posted %s of item %s from receipt %s', line.received_quantity, item.id, receipt.id)
    db.flush()


def transition_receipt(
    db: Session,
    *,
    receipt_id: int,
    actor_id: int,
    actor_role: Role | str,
    action: str,
    comments: str | None = None,
) -> StockReceipt:
    receipt = get_receipt(db, receipt_id=receipt_id)
    transition = resolve_transition(
        RECEIPT_TRANSITIONS,
        action=action,
        current=receipt.status,
        role=actor_role,
        is_owner=receipt.received_by == actor_id,
        reason=comments,
    )
    if (
        receipt.status == ReceiptStatus.SUBMITTED
        and receipt.nominated_to is not None
        and receipt.nominated_to != actor_id
    ):
        raise PermissionError('Only the nominated verifying officer can act on this receipt')

    now = _now()
    previous_status = receipt.status
    receipt.status = transition.target
    receipt.updated_at = now
    if transition.target == ReceiptStatus.SUBMITTED:
        receipt.submitted_at = now
    elif transition.target == ReceiptStatus.VERIFIED:
        receipt.verified_by = actor_id
        receipt.verified_at = now
    elif transition.target == ReceiptStatus.APPROVED:
        receipt.approved_by = actor_id
        receipt.approved_at = now
        receipt.grn_number = next_document_number(db, prefix='GRN')
        _post_receipt_stock(db, receipt=receipt, actor_id=actor_id)
    elif transition.target == ReceiptStatus.REJECTED:
        receipt.rejection_reason = comments.strip()

    _record_workflow(db, receipt=receipt, approver_id=actor_id, action=action, comments=_clean(comments))
    db.flush()
    logger.info(
        'receipt %s moved %s -> %s by user %s',
        receipt.id,
        previous_status.value,
        receipt.status.value,
        actor_id,
    )
    return receipt


def nominate_verifier(db: Session, *, receipt_id: int, actor_id: int, nominee_id: int) -> StockReceipt:
    receipt = get_receipt(db, receipt_id=receipt_id)
    if receipt.status != ReceiptStatus.SUBMITTED:
        raise ValueError('Only submitted receipts can be nominated for verification')
    if receipt.nominated_to is not None:
        raise ValueError('A verifying officer has already been nominated')

    nominee = db.get(User, nominee_id)
    if not nominee or not nominee.is_active or nominee.role not in {UserRole.ADMIN, UserRole.SUPER_ADMIN}:
        raise ValueError('Nominee must be an active admin or super admin')

    receipt.nominated_to = nominee.id
    receipt.nominated_by = actor_id
    receipt.nominated_at = _now()
    receipt.updated_at = receipt.nominated_at
    _record_workflow(
        db,
        receipt=receipt,
        approver_id=actor_id,
        action='nominate',
        comments=f'Nominated {nominee.full_name} for verification',
    )
    db.flush()
    return receipt


def list_receipts(
    db: Session,
    *,
    actor_id: int,
    actor_role: Role | str,
    statuses=None,
    received_by: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockReceipt], int]:
    conditions = []
    if not has_permission(actor_role, Permission.VIEW_ALL_RECEIPTS):
        conditions.append(or_(StockReceipt.received_by == actor_id, StockReceipt.nominated_to == actor_id))
    elif received_by:
        conditions.append(StockReceipt.received_by == received_by)
    parsed_statuses = _parse_statuses(statuses)
    if parsed_statuses:
        conditions.append(StockReceipt.status.in_(parsed_statuses))
    if date_from:
        conditions.append(StockReceipt.receipt_date >= date_from)
    if date_to:
        conditions.append(StockReceipt.receipt_date <= date_to)
    if search and search.strip():
        pattern = f'%{search.strip()}%'
        conditions.append(
            or_(
                StockReceipt.grn_number.ilike(pattern),
                StockReceipt.challan_number.ilike(pattern),
                StockReceipt.supplier_name.ilike(pattern),
                StockReceipt.iv_number.ilike(pattern),
            )
        )

    total = db.execute(select(func.count(StockReceipt.id)).where(*conditions)).scalar_one()
    receipts = (
        db.execute(
            select(StockReceipt)
            .where(*conditions)
            .order_by(StockReceipt.created_at.desc(), StockReceipt.id.desc())
            .limit(min(max(limit, 1), 500))
            .offset(max(offset, 0))
        )
        .scalars()
        .all()
    )
    return list(receipts), total


def receipt_total_value(receipt: StockReceipt) -> Decimal:
    return sum((line.total_value for line in receipt.items), ZERO)


def serialize_receipt(db: Session, receipt: StockReceipt, *, names: dict[int, str] | None = None) -> dict:
    if names is None:
        names = user_names(
            db,
            [receipt.received_by, receipt.verified_by, receipt.approved_by, receipt.nominated_to, receipt.nominated_by],
        )
    return {
        'id': receipt.id,
        'grn_number': receipt.grn_number,
        'iv_number': receipt.iv_number,
        'rv_number': receipt.rv_number,
        'received_from': receipt.received_from,
        'receipt_date': receipt.receipt_date,
        'challan_number': receipt.challan_number,
        'challan_date': receipt.challan_date,
        'supplier_name': receipt.supplier_name,
        'vehicle_number': receipt.vehicle_number,
        'status': receipt.status.value,
        'received_by': receipt.received_by,
        'received_by_name': names.get(receipt.received_by),
        'nominated_to': receipt.nominated_to,
        'nominated_to_name': names.get(receipt.nominated_to),
        'nominated_by': receipt.nominated_by,
        'nominated_at': receipt.nominated_at,
        'submitted_at': receipt.submitted_at,
        'verified_by': receipt.verified_by,
        'verified_by_name': names.get(receipt.verified_by),
        'verified_at': receipt.verified_at,
        'approved_by': receipt.approved_by,
        'approved_by_name': names.get(receipt.approved_by),
        'approved_at': receipt.approved_at,
        'rejection_reason': receipt.rejection_reason,
        'remarks': receipt.remarks,
        'item_count': len(receipt.items),
        'total_value': receipt_total_value(receipt),
        'created_at': receipt.created_at,
        'updated_at': receipt.updated_at,
    }


def serialize_receipt_lines(db: Session, receipt: StockReceipt) -> list[dict]:
    item_ids = [line.item_id for line in receipt.items if line.item_id]
    items = {}
    if item_ids:
        items = {item.id: item for item in db.execute(select(Item).where(Item.id.in_(item_ids))).scalars().all()}
    rows = []
    for line in receipt.items:
        item = items.get(line.item_id)
        rows.append(
            {
                'id': line.id,
                'item_id': line.item_id,
                'item_code': item.item_code if item else None,
                'nomenclature': item.nomenclature if item else line.item_name,
                'category': (item.category if item else line.category).value if (item or line.category) else None,
                'unit_of_measure': item.unit_of_measure if item else line.unit_of_measure,
                'is_new_item': line.item_id is None,
                'challan_quantity': line.challan_quantity,
                'received_quantity': line.received_quantity,
                'variance': line.variance,
                'unit_rate': line.unit_rate,
                'total_value': line.total_value,
                'condition_notes': line.condition_notes,
            }
        )
    return rows


def list_workflow(db: Session, *, receipt_id: int) -> list[dict]:
    rows = db.execute(
        select(ApprovalWorkflow, User.full_name)
        .outerjoin(User, User.id == ApprovalWorkflow.approver_id)
        .where(ApprovalWorkflow.receipt_id == receipt_id)
        .order_by(ApprovalWorkflow.action_date.asc(), ApprovalWorkflow.id.asc())
    ).all()
    return [
        {
            'id': entry.id,
            'approver_id': entry.approver_id,
            'approver_name': full_name,
            'action': entry.action,
            'comments': entry.comments,
            'action_date': entry.action_date,
        }
        for entry, full_name in rows
    ]


def receipt_detail(db: Session, receipt: StockReceipt, *, actor_id: int, actor_role: Role | str) -> dict:
    detail = serialize_receipt(db, receipt)
    detail['items'] = serialize_receipt_lines(db, receipt)
    detail['documents'] = list_documents(db, receipt_id=receipt.id)
    detail['workflow'] = list_workflow(db, receipt_id=receipt.id)
    detail['allowed_actions'] = allowed_actions(
        RECEIPT_TRANSITIONS,
        current=receipt.status,
        role=actor_role,
        is_owner=receipt.received_by == actor_id,
    )
    return detail


def receipt_stats(db: Session, *, actor_role: Role | str, today: date | None = None) -> dict:
    today = today or _now().date()
    status_rows = db.execute(
        select(StockReceipt.status, func.count(StockReceipt.id)).group_by(StockReceipt.status)
    ).all()

    # Current month plus the eleven before it.
    first_month = today.year * 12 + today.month - 1 - (TREND_MONTHS - 1)
    window_start = date(first_month // 12, first_month % 12 + 1, 1)
    recent = (
        db.execute(select(StockReceipt).where(StockReceipt.receipt_date >= window_start)).scalars().all()
    )
    monthly: dict[str, dict] = defaultdict(lambda: {'count': 0, 'total_value': ZERO})
    for receipt in recent:
        key = receipt.receipt_date.strftime('%Y-%m')
        monthly[key]['count'] += 1
        monthly[key]['total_value'] += receipt_total_value(receipt)

    pending_counts = {}
    if has_permission(actor_role, Permission.VERIFY_RECEIPT):
        pending_counts['verifications'] = db.execute(
            select(func.count(StockReceipt.id)).where(StockReceipt.status == ReceiptStatus.SUBMITTED)
        ).scalar_one()
    if has_permission(actor_role, Permission.APPROVE_RECEIPT):
        pending_counts['approvals'] = db.execute(
            select(func.count(StockReceipt.id)).where(StockReceipt.status == ReceiptStatus.VERIFIED)
        ).scalar_one()

    return {
        'status_breakdown': sorted(
            ({'status': status.value, 'count': count} for status, count in status_rows),
            key=lambda row: row['status'],
        ),
        'monthly_trend': [
            {'month': month, 'count': values['count'], 'total_value': values['total_value']}
            for month, values in sorted(monthly.items(), reverse=True)
        ],
        'pending_counts': pending_counts,
    }
