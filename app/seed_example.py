from decimal import Decimal

from sqlalchemy import select

from app.db import SessionLocal
from app.init_db import init_db
from app.models import Item, ItemCategory, User, UserRole
from app.services.item_service import adjust_stock, create_item
from app.services.user_service import create_user

DEMO_USERS = [
    ('superadmin', 'SuperAdmin1', 'Col. A. Rahman', UserRole.SUPER_ADMIN, 'Headquarters'),
    ('admin', 'AdminPass1', 'Maj. S. Karim', UserRole.ADMIN, 'Logistics'),
    ('storekeeper', 'StorePass1', 'Sgt. M. Hossain', UserRole.USER, 'Central Store'),
    ('requester', 'RequestPass1', 'Cpl. R. Ahmed', UserRole.SEMI_USER, 'Signals'),
]

DEMO_ITEMS = [
    ('Field radio set', ItemCategory.CAPITAL_ASSET, 'set', Decimal('45000.00'), Decimal('2'), Decimal('6')),
    ('Combat boots', ItemCategory.NON_CONSUMABLE, 'pair', Decimal('3200.00'), Decimal('20'), Decimal('120')),
    ('Ration pack', ItemCategory.CONSUMABLE, 'box', Decimal('850.00'), Decimal('50'), Decimal('400')),
    ('Night vision goggles', ItemCategory.SENSITIVE, 'pair', Decimal('98000.00'), Decimal('1'), Decimal('3')),
]


def seed() -> None:
    init_db()
    with SessionLocal() as db:
        users: dict[str, User] = {}
        for username, password, full_name, role, department in DEMO_USERS:
            user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
            if not user:
                user = create_user(
                    db,
                    username=username,
                    password=password,
                    full_name=full_name,
                    role=role.value,
                    department=department,
                )
            users[username] = user

        for nomenclature, category, unit, price, reorder_level, opening_stock in DEMO_ITEMS:
            existing = db.execute(select(Item).where(Item.nomenclature == nomenclature)).scalar_one_or_none()
            if existing:
                continue
            item = create_item(
                db,
                actor_id=users['admin'].id,
                nomenclature=nomenclature,
                category=category,
                unit_of_measure=unit,
                unit_price=price,
                reorder_level=reorder_level,
                location='Central Store',
            )
            adjust_stock(
                db,
                item_id=item.id,
                actor_id=users['storekeeper'].id,
                quantity_delta=opening_stock,
                reason='Opening balance',
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
