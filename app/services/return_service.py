from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.auth import Permission, Role, has_permission
from app.models import (
    AllocationStatus,
    Issuance,
    Item,
    ItemAllocation,
    ItemReturn,
    MovementType,
    ReturnCondition,
    ReturnStatus,
)
from app.services.errors import NotFoundError
from app.services.item_service import ZERO, post_movement, to_decimal
from app.services.numbering import next_document_number
from app.services.user_service import user_names

logger = logging.getLogger(__name__)

MOVEMENT_BY_CONDITION = {
    ReturnCondition.GOOD: MovementType.RETURN,
    ReturnCondition.FAIR: MovementType.RETURN,
    ReturnCondition.DAMAGED: MovementType.DAMAGE,
    ReturnCondition.LOST: MovementType.LOSS,
}
ALLOCATION_STATUS_BY_CONDITION = {
    ReturnCondition.GOOD: AllocationStatus.RETURNED,
    ReturnCondition.FAIR: AllocationStatus.RETURNED,
    ReturnCondition.DAMAGED: AllocationStatus.DAMAGED,
    ReturnCondition.LOST: AllocationStatus.LOST,
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _allocation_for(db: Session, issuance_id: int) -> ItemAllocation:
    allocation = db.execute(
        select(ItemAllocation).where(ItemAllocation.issuance_id == issuance_id)
    ).scalar_one_or_none()
    if not allocation:
        raise NotFoundError('Allocation not found for issuance')
    return allocation


def _pending_quantity(db: Session, issuance_id: int) -> Decimal:
    pending = db.execute(
        select(func.coalesce(func.sum(ItemReturn.quantity), 0)).where(
            ItemReturn.issuance_id == issuance_id,
            ItemReturn.status == ReturnStatus.PENDING,
        )
    ).scalar_one()
    return to_decimal(pending)


def outstanding_quantity(db: Session, *, allocation: ItemAllocation) -> Decimal:
    if allocation.status != AllocationStatus.ACTIVE:
        return ZERO
    outstanding = allocation.quantity - allocation.returned_quantity - _pending_quantity(db, allocation.issuance_id)
    return max(outstanding, ZERO)


def get_return(db: Session, *, return_id: int) -> ItemReturn:
    item_return = db.get(ItemReturn, return_id)
    if not item_return:
        raise NotFoundError('Return not found')
    return item_return


def create_return(
    db: Session,
    *,
    actor_id: int,
    issuance_id: int,
    quantity,
    condition: str,
    return_reason: str | None = None,
    damage_description: str | None = None,
    notes: str | None = None,
) -> ItemReturn:
    issuance = db.get(Issuance, issuance_id)
    if not issuance:
        raise NotFoundError('Issuance not found')
    if issuance.issued_to != actor_id:
        raise PermissionError('Only the holder of an issuance can return it')

    try:
        parsed_condition = ReturnCondition(condition.value if hasattr(condition, 'value') else condition)
    except ValueError as exc:
        raise ValueError(f'Invalid return condition: {condition}') from exc

    quantity = to_decimal(quantity, field='quantity')
    if quantity <= ZERO:
        raise ValueError('Return quantity must be greater than zero')
    allocation = _allocation_for(db, issuance.id)
    outstanding = outstanding_quantity(db, allocation=allocation)
    if quantity > outstanding:
        raise ValueError(f'Cannot return more than the outstanding quantity ({outstanding})')
    if parsed_condition in {ReturnCondition.DAMAGED, ReturnCondition.LOST} and not _clean(damage_description):
        raise ValueError('Describe the damage or loss')

    item_return = ItemReturn(
        return_number=next_document_number(db, prefix='RET'),
        issuance_id=issuance.id,
        item_id=issuance.item_id,
        quantity=quantity,
        condition=parsed_condition,
        return_reason=_clean(return_reason),
        damage_description=_clean(damage_description),
        returned_by=actor_id,
        status=ReturnStatus.PENDING,
        notes=_clean(notes),
    )
    db.add(item_return)
    db.flush()
    return item_return


def accept_return(db: Session, *, return_id: int, actor_id: int, notes: str | None = None) -> ItemReturn:
    item_return = get_return(db, return_id=return_id)
    if item_return.status != ReturnStatus.PENDING:
        raise ValueError('Only pending returns can be accepted')

    allocation = _allocation_for(db, item_return.issuance_id)
    remaining = allocation.quantity - allocation.returned_quantity
    if item_return.quantity > remaining:
        raise ValueError('Return exceeds the quantity still allocated')
    item = db.get(Item, item_return.item_id)

    now = _now()
    allocation.returned_quantity = allocation.returned_quantity + item_return.quantity
    if allocation.returned_quantity >= allocation.quantity:
        allocation.status = ALLOCATION_STATUS_BY_CONDITION[item_return.condition]
        allocation.returned_at = now

    item.allocated_stock = max((item.allocated_stock or ZERO) - item_return.quantity, ZERO)
    if item_return.condition == ReturnCondition.LOST:
        item.current_stock = (item.current_stock or ZERO) - item_return.quantity
    item.updated_at = now
    post_movement(
        db,
        item=item,
        movement_type=MOVEMENT_BY_CONDITION[item_return.condition],
        quantity=item_return.quantity,
        performed_by=actor_id,
        reference_type='returns',
        reference_id=item_return.id,
        notes=item_return.return_number,
    )

    item_return.status = ReturnStatus.ACCEPTED
    item_return.accepted_by = actor_id
    item_return.accepted_at = now
    if _clean(notes):
        item_return.notes = _clean(notes)
    db.flush()
    logger.info(
        'return %s accepted by user %s (%s x item %s, %s)',
        item_return.return_number,
        actor_id,
        item_return.quantity,
        item.id,
        item_return.condition.value,
    )
    return item_return


def reject_return(db: Session, *, return_id: int, actor_id: int, reason: str | None) -> ItemReturn:
    item_return = get_return(db, return_id=return_id)
    if item_return.status != ReturnStatus.PENDING:
        raise ValueError('Only pending returns can be rejected')
    reason = _clean(reason)
    if not reason:
        raise ValueError('A reason is required')
    item_return.status = ReturnStatus.REJECTED
    item_return.rejection_reason = reason
    item_return.accepted_by = actor_id
    item_return.accepted_at = _now()
    db.flush()
    return item_return


def list_returns(
    db: Session,
    *,
    actor_id: int,
    actor_role: Role | str,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    conditions = []
    if not has_permission(actor_role, Permission.ACCEPT_RETURNS):
        conditions.append(ItemReturn.returned_by == actor_id)
    if status:
        try:
            conditions.append(ItemReturn.status == ReturnStatus(status))
        except ValueError as exc:
            raise ValueError(f'Invalid return status: {status}') from exc

    rows = db.execute(
        select(ItemReturn, Item, Issuance.issuance_number)
        .join(Item, Item.id == ItemReturn.item_id)
        .join(Issuance, Issuance.id == ItemReturn.issuance_id)
        .where(*conditions)
        .order_by(ItemReturn.returned_at.desc(), ItemReturn.id.desc())
        .limit(min(max(limit, 1), 500))
        .offset(max(offset, 0))
    ).all()
    names = user_names(db, [row[0].returned_by for row in rows] + [row[0].accepted_by for row in rows])
    return [serialize_return(item_return, item, issuance_number, names) for item_return, item, issuance_number in rows]


def serialize_return(item_return: ItemReturn, item: Item, issuance_number: str, names: dict[int, str]) -> dict:
    return {
        'id': item_return.id,
        'return_number': item_return.return_number,
        'issuance_id': item_return.issuance_id,
        'issuance_number': issuance_number,
        'item_id': item.id,
        'item_code': item.item_code,
        'nomenclature': item.nomenclature,
        'quantity': item_return.quantity,
        'condition': item_return.condition.value,
        'return_reason': item_return.return_reason,
        'damage_description': item_return.damage_description,
        'returned_by': item_return.returned_by,
        'returned_by_name': names.get(item_return.returned_by),
        'returned_at': item_return.returned_at,
        'accepted_by': item_return.accepted_by,
        'accepted_by_name': names.get(item_return.accepted_by),
        'accepted_at': item_return.accepted_at,
        'status': item_return.status.value,
        'rejection_reason': item_return.rejection_reason,
        'notes': item_return.notes,
    }


def return_summary(db: Session, item_return: ItemReturn) -> dict:
    item = db.get(Item, item_return.item_id)
    issuance = db.get(Issuance, item_return.issuance_id)
    names = user_names(db, [item_return.returned_by, item_return.accepted_by])
    return serialize_return(item_return, item, issuance.issuance_number, names)


def list_holdings(db: Session, *, user_id: int) -> list[dict]:
    """Active allocations held by ``user_id`` with what is still returnable."""
    rows = db.execute(
        select(ItemAllocation, Issuance, Item)
        .join(Issuance, Issuance.id == ItemAllocation.issuance_id)
        .join(Item, Item.id == ItemAllocation.item_id)
        .where(ItemAllocation.allocated_to == user_id, ItemAllocation.status == AllocationStatus.ACTIVE)
        .order_by(ItemAllocation.allocated_at.desc(), ItemAllocation.id.desc())
    ).all()
    return [
        {
            'allocation_id': allocation.id,
            'issuance_id': issuance.id,
            'issuance_number': issuance.issuance_number,
            'item_id': item.id,
            'item_code': item.item_code,
            'nomenclature': item.nomenclature,
            'unit_of_measure': item.unit_of_measure,
            'quantity': allocation.quantity,
            'returned_quantity': allocation.returned_quantity,
            'returnable_quantity': outstanding_quantity(db, allocation=allocation),
            'allocated_at': allocation.allocated_at,
            'expected_return_date': issuance.expected_return_date,
        }
        for allocation, issuance, item in rows
    ]
