from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.auth import Permission, Role, has_permission
from app.models import (
    AllocationStatus,
    ApprovalWorkflow,
    Issuance,
    Item,
    ItemAllocation,
    ItemCondition,
    MovementType,
    Priority,
    RequestType,
    Requisition,
    RequisitionItem,
    RequisitionStatus,
    User,
)
from app.services.document_service import list_documents
from app.services.errors import NotFoundError
from app.services.item_service import ZERO, post_movement, to_decimal
from app.services.numbering import next_document_number
from app.services.user_service import user_names
from app.services.workflow import REQUISITION_TRANSITIONS, allowed_actions, resolve_transition

logger = logging.getLogger(__name__)

SAVE_AS_STATUSES = {'draft': RequisitionStatus.DRAFT, 'pending': RequisitionStatus.PENDING}
WORKFLOW_ACTION_LABELS = {
    'submit': 'submitted',
    'approve': 'approved',
    'reject': 'rejected',
    'mark_ready': 'ready_for_pickup',
    'issue': 'issued',
    'complete': 'completed',
    'cancel': 'cancelled',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value.value if hasattr(value, 'value') else value)
    except ValueError as exc:
        raise ValueError(f'Invalid {label}: {value}') from exc


def _validate_lines(db: Session, lines: list[dict]) -> list[RequisitionItem]:
    if not lines:
        raise ValueError('At least one item is required')

    rows = []
    seen: set[int] = set()
    for index, line in enumerate(lines, start=1):
        item_id = line.get('item_id')
        item = db.get(Item, item_id) if item_id else None
        if not item or not item.is_active:
            raise ValueError(f'Line {index}: item not found or inactive')
        if item.id in seen:
            raise ValueError(f'Line {index}: {item.nomenclature} is listed more than once')
        seen.add(item.id)
        quantity = to_decimal(line.get('quantity_requested'), field='quantity')
        if quantity <= ZERO:
            raise ValueError(f'Line {index}: quantity must be greater than zero')
        rows.append(
            RequisitionItem(
                item_id=item.id,
                quantity_requested=quantity,
                quantity_issued=ZERO,
                unit_price=item.unit_price or ZERO,
                notes=_clean(line.get('notes')),
            )
        )
    return rows


def _recalculate_total(requisition: Requisition) -> None:
    requisition.total_value = sum((line.total_price for line in requisition.items), ZERO)


def _record_workflow(
    db: Session, *, requisition: Requisition, approver_id: int, action: str, comments: str | None
) -> None:
    db.add(
        ApprovalWorkflow(
            requisition_id=requisition.id,
            approver_id=approver_id,
            action=WORKFLOW_ACTION_LABELS.get(action, action),
            comments=comments,
        )
    )


def get_requisition(db: Session, *, requisition_id: int) -> Requisition:
    requisition = db.get(Requisition, requisition_id)
    if not requisition:
        raise NotFoundError('Requisition not found')
    return requisition


def can_view_requisition(requisition: Requisition, *, actor_id: int, actor_role: Role | str) -> bool:
    if requisition.requester_id == actor_id:
        return True
    return has_permission(actor_role, Permission.VIEW_ALL_REQUISITIONS) or has_permission(
        actor_role, Permission.ISSUE_ITEMS
    )


def get_requisition_for_actor(
    db: Session, *, requisition_id: int, actor_id: int, actor_role: Role | str
) -> Requisition:
    requisition = get_requisition(db, requisition_id=requisition_id)
    if not can_view_requisition(requisition, actor_id=actor_id, actor_role=actor_role):
        raise PermissionError('Access denied')
    return requisition


def create_requisition(
    db: Session,
    *,
    actor_id: int,
    purpose: str,
    items: list[dict],
    department: str | None = None,
    request_type: str = RequestType.SELF.value,
    priority: str = Priority.NORMAL.value,
    save_as: str = 'draft',
) -> Requisition:
    if save_as not in SAVE_AS_STATUSES:
        raise ValueError('save_as must be draft or pending')
    purpose = _clean(purpose)
    if not purpose:
        raise ValueError('Purpose is required')
    requester = db.get(User, actor_id)
    if requester is None:
        raise NotFoundError('User not found')

    requisition = Requisition(
        requisition_number=next_document_number(db, prefix='REQ'),
        requester_id=actor_id,
        department=_clean(department) or requester.department,
        request_type=_parse_enum(RequestType, request_type, 'request type'),
        priority=_parse_enum(Priority, priority, 'priority'),
        purpose=purpose,
        status=SAVE_AS_STATUSES[save_as],
    )
    requisition.items = _validate_lines(db, items)
    _recalculate_total(requisition)
    db.add(requisition)
    db.flush()
    if requisition.status == RequisitionStatus.PENDING:
        _record_workflow(db, requisition=requisition, approver_id=actor_id, action='submit', comments=None)
        db.flush()
    logger.info('requisition %s created by user %s as %s', requisition.requisition_number, actor_id, save_as)
    return requisition


def update_requisition(
    db: Session,
    *,
    requisition_id: int,
    actor_id: int,
    changes: dict,
    items: list[dict] | None,
) -> Requisition:
    requisition = get_requisition(db, requisition_id=requisition_id)
    if requisition.requester_id != actor_id:
        raise PermissionError('Only the requester can modify this requisition')
    if requisition.status != RequisitionStatus.DRAFT:
        raise ValueError('Can only modify draft requisitions')

    if 'purpose' in changes:
        purpose = _clean(changes['purpose'])
        if not purpose:
            raise ValueError('Purpose is required')
        requisition.purpose = purpose
    if 'department' in changes:
        requisition.department = _clean(changes['department'])
    if changes.get('request_type'):
        requisition.request_type = _parse_enum(RequestType, changes['request_type'], 'request type')
    if changes.get('priority'):
        requisition.priority = _parse_enum(Priority, changes['priority'], 'priority')
    if items is not None:
        new_lines = _validate_lines(db, items)
        requisition.items.clear()
        db.flush()
        requisition.items.extend(new_lines)
    _recalculate_total(requisition)
    requisition.updated_at = _now()
    db.flush()
    return requisition


def _apply_approved_quantities(requisition: Requisition, approved_quantities: dict | None) -> None:
    if not approved_quantities:
        return
    lines = {line.id: line for line in requisition.items}
    for line_id, raw_quantity in approved_quantities.items():
        line = lines.get(int(line_id))
        if line is None:
            raise ValueError(f'Requisition line {line_id} not found')
        quantity = to_decimal(raw_quantity, field='approved quantity')
        if quantity < ZERO:
            raise ValueError('Approved quantity cannot be negative')
        if quantity > line.quantity_requested:
            raise ValueError('Approved quantity cannot exceed the requested quantity')
        line.quantity_approved = quantity


def transition_requisition(
    db: Session,
    *,
    requisition_id: int,
    actor_id: int,
    actor_role: Role | str,
    action: str,
    comments: str | None = None,
    approved_quantities: dict | None = None,
) -> Requisition:
    if action == 'issue':
        issue_requisition(db, requisition_id=requisition_id, actor_id=actor_id, actor_role=actor_role, notes=comments)
        return get_requisition(db, requisition_id=requisition_id)

    requisition = get_requisition(db, requisition_id=requisition_id)
    transition = resolve_transition(
        REQUISITION_TRANSITIONS,
        action=action,
        current=requisition.status,
        role=actor_role,
        is_owner=requisition.requester_id == actor_id,
        reason=comments,
    )

    now = _now()
    previous_status = requisition.status
    if transition.target == RequisitionStatus.APPROVED:
        _apply_approved_quantities(requisition, approved_quantities)
        for line in requisition.items:
            if line.quantity_approved is None:
                line.quantity_approved = line.quantity_requested
        if all(line.quantity_approved == ZERO for line in requisition.items):
            raise ValueError('At least one line must be approved with a non-zero quantity')
        requisition.approved_by = actor_id
        requisition.approved_at = now
        requisition.approval_comments = _clean(comments)
        _recalculate_total(requisition)
    elif transition.target == RequisitionStatus.REJECTED:
        requisition.rejection_reason = comments.strip()
    elif transition.target == RequisitionStatus.COMPLETED:
        requisition.completed_at = now
    elif transition.target == RequisitionStatus.CANCELLED:
        requisition.rejection_reason = _clean(comments)

    requisition.status = transition.target
    requisition.updated_at = now
    _record_workflow(db, requisition=requisition, approver_id=actor_id, action=action, comments=_clean(comments))
    db.flush()
    logger.info(
        'requisition %s moved %s -> %s by user %s',
        requisition.requisition_number,
        previous_status.value,
        requisition.status.value,
        actor_id,
    )
    return requisition


def issue_requisition(
    db: Session,
    *,
    requisition_id: int,
    actor_id: int,
    actor_role: Role | str,
    lines: list[dict] | None = None,
    expected_return_date: date | None = None,
    gate_pass_number: str | None = None,
    notes: str | None = None,
) -> list[Issuance]:
    requisition = get_requisition(db, requisition_id=requisition_id)
    resolve_transition(
        REQUISITION_TRANSITIONS,
        action='issue',
        current=requisition.status,
        role=actor_role,
        is_owner=requisition.requester_id == actor_id,
    )

    overrides = {int(line['requisition_item_id']): line for line in lines or []}
    known_ids = {line.id for line in requisition.items}
    unknown = set(overrides) - known_ids
    if unknown:
        raise ValueError(f'Requisition line {sorted(unknown)[0]} not found')

    now = _now()
    issuances: list[Issuance] = []
    for line in requisition.items:
        remaining = line.effective_quantity - (line.quantity_issued or ZERO)
        override = overrides.get(line.id, {})
        quantity = to_decimal(override['quantity'], field='quantity') if override.get('quantity') is not None else remaining
        if quantity < ZERO:
            raise ValueError('Issue quantity cannot be negative')
        if quantity == ZERO:
            continue
        if quantity > remaining:
            raise ValueError(f'Cannot issue more than the approved quantity for line {line.id}')

        item = db.get(Item, line.item_id)
        if quantity > item.available_stock:
            raise ValueError(f'Insufficient stock for {item.nomenclature}: {item.available_stock} available')

        issuance = Issuance(
            issuance_number=next_document_number(db, prefix='ISS'),
            requisition_id=requisition.id,
            requisition_item_id=line.id,
            item_id=item.id,
            quantity=quantity,
            serial_numbers=[str(value).strip() for value in override.get('serial_numbers') or [] if str(value).strip()],
            condition=_parse_enum(ItemCondition, override.get('condition') or ItemCondition.GOOD.value, 'condition'),
            issued_by=actor_id,
            issued_to=requisition.requester_id,
            issued_at=now,
            expected_return_date=expected_return_date,
            gate_pass_number=_clean(gate_pass_number),
            notes=_clean(notes),
        )
        db.add(issuance)
        db.flush()

        db.add(
            ItemAllocation(
                item_id=item.id,
                issuance_id=issuance.id,
                allocated_to=requisition.requester_id,
                quantity=quantity,
                returned_quantity=ZERO,
                status=AllocationStatus.ACTIVE,
                allocated_at=now,
            )
        )
        line.quantity_issued = (line.quantity_issued or ZERO) + quantity
        item.allocated_stock = (item.allocated_stock or ZERO) + quantity
        item.updated_at = now
        post_movement(
            db,
            item=item,
            movement_type=MovementType.ISSUE,
            quantity=quantity,
            performed_by=actor_id,
            reference_type='issuances',
            reference_id=issuance.id,
            notes=requisition.requisition_number,
        )
        issuances.append(issuance)

    if not issuances:
        raise ValueError('Nothing to issue')

    requisition.status = RequisitionStatus.ISSUED
    requisition.issued_by = actor_id
    requisition.issued_at = now
    requisition.updated_at = now
    _record_workflow(db, requisition=requisition, approver_id=actor_id, action='issue', comments=_clean(notes))
    db.flush()
    logger.info(
        'requisition %s issued by user %s in %s issuance(s)',
        requisition.requisition_number,
        actor_id,
        len(issuances),
    )
    return issuances


def list_requisitions(
    db: Session,
    *,
    actor_id: int,
    actor_role: Role | str,
    status: str | None = None,
    priority: str | None = None,
    requester_id: int | None = None,
    department: str | None = None,
    search: str | None = None,
    mine: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Requisition], int]:
    conditions = []
    sees_all = has_permission(actor_role, Permission.VIEW_ALL_REQUISITIONS) or has_permission(
        actor_role, Permission.ISSUE_ITEMS
    )
    if mine or not sees_all:
        conditions.append(Requisition.requester_id == actor_id)
    elif requester_id:
        conditions.append(Requisition.requester_id == requester_id)
    if status:
        statuses = [_parse_enum(RequisitionStatus, part.strip(), 'status') for part in status.split(',') if part.strip()]
        conditions.append(Requisition.status.in_(statuses))
    if priority:
        conditions.append(Requisition.priority == _parse_enum(Priority, priority, 'priority'))
    if department:
        conditions.append(Requisition.department == department)
    if search and search.strip():
        pattern = f'%{search.strip()}%'
        conditions.append(or_(Requisition.requisition_number.ilike(pattern), Requisition.purpose.ilike(pattern)))

    total = db.execute(select(func.count(Requisition.id)).where(*conditions)).scalar_one()
    rows = (
        db.execute(
            select(Requisition)
            .where(*conditions)
            .order_by(Requisition.created_at.desc(), Requisition.id.desc())
            .limit(min(max(limit, 1), 500))
            .offset(max(offset, 0))
        )
        .scalars()
        .all()
    )
    return list(rows), total


def serialize_requisition(requisition: Requisition, names: dict[int, str]) -> dict:
    return {
        'id': requisition.id,
        'requisition_number': requisition.requisition_number,
        'requester_id': requisition.requester_id,
        'requester_name': names.get(requisition.requester_id),
        'department': requisition.department,
        'request_type': requisition.request_type.value,
        'priority': requisition.priority.value,
        'purpose': requisition.purpose,
        'status': requisition.status.value,
        'total_value': requisition.total_value,
        'item_count': len(requisition.items),
        'approved_by': requisition.approved_by,
        'approved_by_name': names.get(requisition.approved_by),
        'approved_at': requisition.approved_at,
        'approval_comments': requisition.approval_comments,
        'issued_by': requisition.issued_by,
        'issued_by_name': names.get(requisition.issued_by),
        'issued_at': requisition.issued_at,
        'completed_at': requisition.completed_at,
        'rejection_reason': requisition.rejection_reason,
        'created_at': requisition.created_at,
        'updated_at': requisition.updated_at,
    }


def serialize_requisitions(db: Session, requisitions: list[Requisition]) -> list[dict]:
    ids = set()
    for requisition in requisitions:
        ids.update({requisition.requester_id, requisition.approved_by, requisition.issued_by})
    names = user_names(db, ids)
    return [serialize_requisition(requisition, names) for requisition in requisitions]


def list_issuances(db: Session, *, requisition_id: int) -> list[dict]:
    rows = db.execute(
        select(Issuance, Item, ItemAllocation)
        .join(Item, Item.id == Issuance.item_id)
        .outerjoin(ItemAllocation, ItemAllocation.issuance_id == Issuance.id)
        .where(Issuance.requisition_id == requisition_id)
        .order_by(Issuance.id.asc())
    ).all()
    return [
        {
            'id': issuance.id,
            'issuance_number': issuance.issuance_number,
            'requisition_item_id': issuance.requisition_item_id,
            'item_id': item.id,
            'item_code': item.item_code,
            'nomenclature': item.nomenclature,
            'unit_of_measure': item.unit_of_measure,
            'quantity': issuance.quantity,
            'serial_numbers': issuance.serial_numbers or [],
            'condition': issuance.condition.value,
            'issued_by': issuance.issued_by,
            'issued_to': issuance.issued_to,
            'issued_at': issuance.issued_at,
            'expected_return_date': issuance.expected_return_date,
            'gate_pass_number': issuance.gate_pass_number,
            'notes': issuance.notes,
            'allocation_status': allocation.status.value if allocation else None,
            'returned_quantity': allocation.returned_quantity if allocation else ZERO,
        }
        for issuance, item, allocation in rows
    ]


def list_workflow(db: Session, *, requisition_id: int) -> list[dict]:
    rows = db.execute(
        select(ApprovalWorkflow, User.full_name)
        .outerjoin(User, User.id == ApprovalWorkflow.approver_id)
        .where(ApprovalWorkflow.requisition_id == requisition_id)
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


def requisition_detail(db: Session, requisition: Requisition, *, actor_id: int, actor_role: Role | str) -> dict:
    detail = serialize_requisitions(db, [requisition])[0]
    items = {
        item.id: item
        for item in db.execute(
            select(Item).where(Item.id.in_([line.item_id for line in requisition.items] or [0]))
        ).scalars()
    }
    detail['items'] = [
        {
            'id': line.id,
            'item_id': line.item_id,
            'item_code': items[line.item_id].item_code if line.item_id in items else None,
            'nomenclature': items[line.item_id].nomenclature if line.item_id in items else None,
            'unit_of_measure': items[line.item_id].unit_of_measure if line.item_id in items else None,
            'available_stock': items[line.item_id].available_stock if line.item_id in items else None,
            'quantity_requested': line.quantity_requested,
            'quantity_approved': line.quantity_approved,
            'quantity_issued': line.quantity_issued,
            'unit_price': line.unit_price,
            'total_price': line.total_price,
            'notes': line.notes,
        }
        for line in requisition.items
    ]
    detail['issuances'] = list_issuances(db, requisition_id=requisition.id)
    detail['documents'] = list_documents(db, requisition_id=requisition.id)
    detail['workflow'] = list_workflow(db, requisition_id=requisition.id)
    detail['allowed_actions'] = allowed_actions(
        REQUISITION_TRANSITIONS,
        current=requisition.status,
        role=actor_role,
        is_owner=requisition.requester_id == actor_id,
    )
    return detail


def issuance_voucher(db: Session, *, issuance_id: int) -> dict:
    row = db.execute(
        select(Issuance, Item, Requisition)
        .join(Item, Item.id == Issuance.item_id)
        .join(Requisition, Requisition.id == Issuance.requisition_id)
        .where(Issuance.id == issuance_id)
    ).one_or_none()
    if not row:
        raise NotFoundError('Issuance not found')
    issuance, item, requisition = row
    names = user_names(db, [issuance.issued_by, issuance.issued_to])
    return {
        'issuance': issuance,
        'item': item,
        'requisition': requisition,
        'issued_by_name': names.get(issuance.issued_by),
        'issued_to_name': names.get(issuance.issued_to),
        'total_value': (issuance.quantity * (item.unit_price or Decimal('0'))),
    }
