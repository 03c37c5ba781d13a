from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from app.models import Item, ItemCategory, MovementType, StockMovement, User
from app.services.errors import NotFoundError
from app.services.numbering import next_item_code

ZERO = Decimal('0')
STOCK_STATUSES = ('available', 'low', 'out_of_stock')
ITEM_FIELDS = (
    'item_code',
    'nomenclature',
    'category',
    'unit_of_measure',
    'description',
    'unit_price',
    'reorder_level',
    'location',
    'is_active',
)
MIN_SEARCH_LENGTH = 2


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_decimal(value, *, field: str = 'value') -> Decimal:
    if value is None or value == '':
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f'Invalid {field}') from exc


def parse_category(value) -> ItemCategory:
    try:
        return ItemCategory(value.value if hasattr(value, 'value') else value)
    except ValueError as exc:
        raise ValueError(f'Invalid item category: {value}') from exc


def stock_status(item: Item) -> str:
    available = item.available_stock
    if available <= ZERO:
        return 'out_of_stock'
    if available <= (item.reorder_level or ZERO):
        return 'low'
    return 'available'


def serialize_item(item: Item) -> dict:
    return {
        'id': item.id,
        'item_code': item.item_code,
        'nomenclature': item.nomenclature,
        'category': item.category.value,
        'unit_of_measure': item.unit_of_measure,
        'description': item.description,
        'unit_price': item.unit_price,
        'reorder_level': item.reorder_level,
        'current_stock': item.current_stock,
        'allocated_stock': item.allocated_stock,
        'available_stock': item.available_stock,
        'stock_status': stock_status(item),
        'location': item.location,
        'is_active': item.is_active,
        'created_by': item.created_by,
        'created_at': item.created_at,
        'updated_at': item.updated_at,
    }


def _stock_status_condition(value: str):
    if value not in STOCK_STATUSES:
        raise ValueError(f'Invalid stock status: {value}. Use one of: {", ".join(STOCK_STATUSES)}')
    available = Item.current_stock - Item.allocated_stock
    if value == 'out_of_stock':
        return available <= 0
    if value == 'low':
        return and_(available > 0, available <= Item.reorder_level)
    return and_(available > 0, available > Item.reorder_level)


def get_item(db: Session, *, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise NotFoundError('Item not found')
    return item


def get_item_by_code(db: Session, *, item_code: str) -> Item | None:
    return db.execute(select(Item).where(Item.item_code == item_code.strip())).scalar_one_or_none()


def list_items(
    db: Session,
    *,
    category: str | None = None,
    is_active: bool | None = True,
    search: str | None = None,
    stock_status_filter: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Item]:
    conditions = []
    if category:
        conditions.append(Item.category == parse_category(category))
    if is_active is not None:
        conditions.append(Item.is_active.is_(is_active))
    if search and search.strip():
        pattern = f'%{search.strip()}%'
        conditions.append(or_(Item.item_code.ilike(pattern), Item.nomenclature.ilike(pattern)))
    if stock_status_filter:
        conditions.append(_stock_status_condition(stock_status_filter))
    return list(
        db.execute(
            select(Item)
            .where(*conditions)
            .order_by(Item.nomenclature.asc(), Item.id.asc())
            .limit(min(max(limit, 1), 1000))
            .offset(max(offset, 0))
        )
        .scalars()
        .all()
    )


def search_items(db: Session, *, query: str, limit: int = 50) -> list[Item]:
    query = (query or '').strip()
    if len(query) < MIN_SEARCH_LENGTH:
        raise ValueError(f'Search query must be at least {MIN_SEARCH_LENGTH} characters')
    pattern = f'%{query}%'
    return list(
        db.execute(
            select(Item)
            .where(Item.is_active.is_(True), or_(Item.item_code.ilike(pattern), Item.nomenclature.ilike(pattern)))
            .order_by(Item.nomenclature.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def create_item(
    db: Session,
    *,
    actor_id: int | None,
    nomenclature: str,
    category,
    unit_of_measure: str,
    item_code: str | None = None,
    description: str | None = None,
    unit_price=None,
    reorder_level=None,
    location: str | None = None,
) -> Item:
    nomenclature = (nomenclature or '').strip()
    if not nomenclature:
        raise ValueError('Nomenclature is required')
    unit_of_measure = (unit_of_measure or '').strip()
    if not unit_of_measure:
        raise ValueError('Unit of measure is required')
    unit_price = to_decimal(unit_price, field='unit price')
    reorder_level = to_decimal(reorder_level, field='reorder level')
    if unit_price < ZERO or reorder_level < ZERO:
        raise ValueError('Unit price and reorder level cannot be negative')

    item_code = (item_code or '').strip() or next_item_code(db)
    if get_item_by_code(db, item_code=item_code):
        raise ValueError('Item code already exists')

    item = Item(
        item_code=item_code,
        nomenclature=nomenclature,
        category=parse_category(category),
        unit_of_measure=unit_of_measure,
        description=(description or '').strip() or None,
        unit_price=unit_price,
        reorder_level=reorder_level,
        current_stock=ZERO,
        allocated_stock=ZERO,
        location=(location or '').strip() or None,
        is_active=True,
        created_by=actor_id,
    )
    db.add(item)
    db.flush()
    return item


def update_item(db: Session, *, item_id: int, changes: dict) -> tuple[Item, dict]:
    item = get_item(db, item_id=item_id)
    previous: dict = {}
    for field in ITEM_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == 'item_code':
            value = (value or '').strip()
            if not value:
                raise ValueError('Item code cannot be empty')
            existing = get_item_by_code(db, item_code=value)
            if existing and existing.id != item.id:
                raise ValueError('Item code already exists')
        elif field == 'category':
            value = parse_category(value)
        elif field in {'unit_price', 'reorder_level'}:
            value = to_decimal(value, field=field.replace('_', ' '))
            if value < ZERO:
                raise ValueError(f'{field.replace("_", " ").capitalize()} cannot be negative')
        elif field in {'nomenclature', 'unit_of_measure'}:
            value = (value or '').strip()
            if not value:
                raise ValueError(f'{field.replace("_", " ").capitalize()} is required')
        elif field == 'is_active':
            value = bool(value)
        else:
            value = (value or '').strip() or None
        current = getattr(item, field)
        if current != value:
            previous[field] = current.value if hasattr(current, 'value') else current
            setattr(item, field, value)
    if previous:
        item.updated_at = _now()
    db.flush()
    return item, previous


def post_movement(
    db: Session,
    *,
    item: Item,
    movement_type: MovementType,
    quantity: Decimal,
    performed_by: int,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        item_id=item.id,
        movement_type=movement_type,
        quantity=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    )
    db.add(movement)
    return movement


def adjust_stock(db: Session, *, item_id: int, actor_id: int, quantity_delta, reason: str) -> Item:
    """Manual correction of on-hand stock, e.g. after a physical count."""
    item = get_item(db, item_id=item_id)
    delta = to_decimal(quantity_delta, field='quantity')
    if delta == ZERO:
        raise ValueError('Adjustment quantity cannot be zero')
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('A reason is required for stock adjustments')

    new_stock = item.current_stock + delta
    if new_stock < ZERO:
        raise ValueError('Stock cannot become negative')
    if new_stock < item.allocated_stock:
        raise ValueError('Stock cannot drop below the allocated quantity')

    item.current_stock = new_stock
    item.updated_at = _now()
    post_movement(
        db,
        item=item,
        movement_type=MovementType.ADJUSTMENT,
        quantity=delta,
        performed_by=actor_id,
        reference_type='items_master',
        reference_id=item.id,
        notes=reason,
    )
    db.flush()
    return item


def list_movements(db: Session, *, item_id: int, limit: int = 100) -> list[dict]:
    get_item(db, item_id=item_id)
    rows = db.execute(
        select(StockMovement, User.full_name)
        .outerjoin(User, User.id == StockMovement.performed_by)
        .where(StockMovement.item_id == item_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
    ).all()
    return [
        {
            'id': movement.id,
            'movement_type': movement.movement_type.value,
            'quantity': movement.quantity,
            'reference_type': movement.reference_type,
            'reference_id': movement.reference_id,
            'performed_by': movement.performed_by,
            'performed_by_name': full_name,
            'notes': movement.notes,
            'created_at': movement.created_at,
        }
        for movement, full_name in rows
    ]


def low_stock_items(db: Session, *, limit: int = 100) -> list[Item]:
    available = Item.current_stock - Item.allocated_stock
    return list(
        db.execute(
            select(Item)
            .where(Item.is_active.is_(True), available <= Item.reorder_level)
            .order_by(available.asc(), Item.nomenclature.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def item_stats(db: Session) -> dict:
    active = Item.is_active.is_(True)
    total_active = db.execute(select(func.count(Item.id)).where(active)).scalar_one()
    total_inactive = db.execute(select(func.count(Item.id)).where(Item.is_active.is_(False))).scalar_one()
    since = _now() - timedelta(days=30)
    recent = db.execute(select(func.count(Item.id)).where(active, Item.created_at >= since)).scalar_one()
    low = db.execute(
        select(func.count(Item.id)).where(active, (Item.current_stock - Item.allocated_stock) <= Item.reorder_level)
    ).scalar_one()
    by_category = db.execute(
        select(Item.category, func.count(Item.id)).where(active).group_by(Item.category).order_by(Item.category)
    ).all()
    return {
        'total_active': total_active,
        'total_inactive': total_inactive,
        'added_last_30_days': recent,
        'low_stock': low,
        'by_category': [{'category': category.value, 'count': count} for category, count in by_category],
    }
