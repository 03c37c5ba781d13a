from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models import DocumentCounter, Issuance, Item, ItemReturn, Requisition, StockReceipt

NUMBER_COLUMNS = {
    'GRN': StockReceipt.grn_number,
    'REQ': Requisition.requisition_number,
    'ISS': Issuance.issuance_number,
    'RET': ItemReturn.return_number,
}

SEQUENCE_WIDTH = 4
ITEM_CODE_PREFIX = 'ITM'
ITEM_CODE_YEAR = 0


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f'{prefix}-{year}-{sequence:0{SEQUENCE_WIDTH}d}'


def parse_sequence(value: str | None) -> int | None:
    if not value:
        return None
    tail = value.rsplit('-', 1)[-1]
    return int(tail) if tail.isdigit() else None


def _max_sequence(db: Session, column, prefix: str) -> int:
    values = db.execute(select(column).where(column.like(f'{prefix}-%'))).scalars().all()
    sequences = [seq for seq in (parse_sequence(value) for value in values) if seq is not None]
    return max(sequences, default=0)


def counter_lock_query(prefix: str, year: int):
    return (
        select(DocumentCounter)
        .where(DocumentCounter.prefix == prefix, DocumentCounter.year == year)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _ensure_counter_row(db: Session, prefix: str, year: int) -> None:
    insert = postgresql.insert if db.get_bind().dialect.name == 'postgresql' else sqlite.insert
    db.execute(
        insert(DocumentCounter).values(prefix=prefix, year=year, last_value=0).on_conflict_do_nothing()
    )


def reserve_sequence(db: Session, *, prefix: str, year: int, column, like_prefix: str) -> int:
    """Take the next sequence for ``prefix``/``year``.

    The counter row stays locked until the caller's transaction ends, so a
    concurrent approval waits here instead of drawing the same number. Numbers
    already present in ``column`` (imported rows, hand-entered item codes) are
    never handed out again.
    """
    _ensure_counter_row(db, prefix, year)
    counter = db.execute(counter_lock_query(prefix, year)).scalar_one()
    counter.last_value = max(counter.last_value, _max_sequence(db, column, like_prefix)) + 1
    db.flush()
    return counter.last_value


def next_document_number(db: Session, *, prefix: str, year: int | None = None) -> str:
    if prefix not in NUMBER_COLUMNS:
        raise ValueError(f'Unknown document prefix: {prefix}')
    year = year or datetime.now(tz=timezone.utc).year
    sequence = reserve_sequence(
        db, prefix=prefix, year=year, column=NUMBER_COLUMNS[prefix], like_prefix=f'{prefix}-{year}'
    )
    return format_number(prefix, year, sequence)


def next_item_code(db: Session) -> str:
    sequence = reserve_sequence(
        db, prefix=ITEM_CODE_PREFIX, year=ITEM_CODE_YEAR, column=Item.item_code, like_prefix=ITEM_CODE_PREFIX
    )
    return f'{ITEM_CODE_PREFIX}-{sequence:05d}'
