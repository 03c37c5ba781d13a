from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Permission, Principal, require_permission
from app.db import get_db
from app.dependencies import get_client_ip, get_user_agent, service_error
from app.schemas import ItemCreate, ItemUpdate, StockAdjustment
from app.services.audit_service import log_audit
from app.services.item_service import (
    adjust_stock,
    create_item,
    get_item,
    item_stats,
    list_items,
    list_movements,
    low_stock_items,
    search_items,
    serialize_item,
    update_item,
)

router = APIRouter(prefix='/api/items', tags=['items'])

catalog_access = require_permission(Permission.VIEW_CATALOG)
catalog_admin = require_permission(Permission.MANAGE_ITEMS)
stock_keeper = require_permission(Permission.MANAGE_STOCK)


@router.get('')
def items_list(
    category: str | None = None,
    is_active: bool | None = True,
    search: str | None = None,
    stock_status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(catalog_access),
    db: Session = Depends(get_db),
):
    try:
        items = list_items(
            db,
            category=category,
            is_active=is_active,
            search=search,
            stock_status_filter=stock_status,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': [serialize_item(item) for item in items], 'count': len(items)}


@router.get('/search')
def items_search(
    q: str = '',
    limit: int = 50,
    principal: Principal = Depends(catalog_access),
    db: Session = Depends(get_db),
):
    try:
        items = search_items(db, query=q, limit=limit)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': [serialize_item(item) for item in items], 'count': len(items)}


@router.get('/stats')
def items_stats(principal: Principal = Depends(catalog_access), db: Session = Depends(get_db)):
    return item_stats(db)


@router.get('/low-stock')
def items_low_stock(
    limit: int = 100,
    principal: Principal = Depends(catalog_access),
    db: Session = Depends(get_db),
):
    items = low_stock_items(db, limit=limit)
    return {'data': [serialize_item(item) for item in items], 'count': len(items)}


@router.get('/{item_id}')
def item_detail(item_id: int, principal: Principal = Depends(catalog_access), db: Session = Depends(get_db)):
    try:
        item = get_item(db, item_id=item_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return serialize_item(item)


@router.post('', status_code=201)
def item_create(
    body: ItemCreate,
    request: Request,
    principal: Principal = Depends(catalog_admin),
    db: Session = Depends(get_db),
):
    try:
        item = create_item(db, actor_id=principal.id, **body.model_dump())
    except ValueError as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_CREATED',
        table_name='items_master',
        record_id=item.id,
        new_value={'item_code': item.item_code, 'nomenclature': item.nomenclature},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_item(item)


@router.put('/{item_id}')
def item_update(
    item_id: int,
    body: ItemUpdate,
    request: Request,
    principal: Principal = Depends(catalog_admin),
    db: Session = Depends(get_db),
):
    changes = body.model_dump(exclude_unset=True)
    try:
        item, previous = update_item(db, item_id=item_id, changes=changes)
    except ValueError as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_UPDATED',
        table_name='items_master',
        record_id=item.id,
        old_value=previous,
        new_value={field: changes[field] for field in previous},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_item(item)


@router.post('/{item_id}/adjust-stock')
def item_adjust_stock(
    item_id: int,
    body: StockAdjustment,
    request: Request,
    principal: Principal = Depends(stock_keeper),
    db: Session = Depends(get_db),
):
    try:
        before = get_item(db, item_id=item_id).current_stock
        item = adjust_stock(
            db,
            item_id=item_id,
            actor_id=principal.id,
            quantity_delta=body.quantity,
            reason=body.reason,
        )
    except ValueError as exc:
        raise service_error(exc) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='STOCK_ADJUSTED',
        table_name='items_master',
        record_id=item.id,
        old_value={'current_stock': before},
        new_value={'current_stock': item.current_stock, 'reason': body.reason},
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return serialize_item(item)


@router.get('/{item_id}/movements')
def item_movements(
    item_id: int,
    limit: int = 100,
    principal: Principal = Depends(catalog_access),
    db: Session = Depends(get_db),
):
    try:
        rows = list_movements(db, item_id=item_id, limit=limit)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {'data': rows, 'count': len(rows)}
