from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from app.models import (
    AllocationStatus,
    ItemAllocation,
    MovementType,
    ReturnStatus,
    StockMovement,
    UserRole,
)
from app.services.requisition_service import create_requisition, issue_requisition, transition_requisition
from app.services.return_service import (
    accept_return,
    create_return,
    list_holdings,
    list_returns,
    reject_return,
)
from tests.db_support import DatabaseTestCase, make_item, make_user


class ReturnServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.requester = make_user(self.db, 'requester', UserRole.SEMI_USER)
        self.bystander = make_user(self.db, 'bystander', UserRole.SEMI_USER)
        self.keeper = make_user(self.db, 'keeper', UserRole.USER)
        self.admin = make_user(self.db, 'admin', UserRole.ADMIN)
        self.item = make_item(self.db, 'Sleeping bag', current_stock='10', unit_price='3000.00')

        requisition = create_requisition(
            self.db,
            actor_id=self.requester.id,
            purpose='Winter exercise',
            items=[{'item_id': self.item.id, 'quantity_requested': '4'}],
            save_as='pending',
        )
        transition_requisition(
            self.db,
            requisition_id=requisition.id,
            actor_id=self.admin.id,
            actor_role=UserRole.ADMIN,
            action='approve',
        )
        (self.issuance,) = issue_requisition(
            self.db, requisition_id=requisition.id, actor_id=self.keeper.id, actor_role=UserRole.USER
        )

    def _return(self, quantity: str, condition: str = 'good', **kwargs):
        return create_return(
            self.db,
            actor_id=self.requester.id,
            issuance_id=self.issuance.id,
            quantity=quantity,
            condition=condition,
            **kwargs,
        )

    def _allocation(self) -> ItemAllocation:
        return self.db.execute(select(ItemAllocation)).scalar_one()

    def test_only_holder_can_return(self) -> None:
        with self.assertRaises(PermissionError):
            create_return(
                self.db,
                actor_id=self.bystander.id,
                issuance_id=self.issuance.id,
                quantity='1',
                condition='good',
            )

    def test_pending_returns_count_against_outstanding(self) -> None:
        self._return('3')
        with self.assertRaisesRegex(ValueError, 'outstanding'):
            self._return('2')
        holdings = list_holdings(self.db, user_id=self.requester.id)
        self.assertEqual(holdings[0]['returnable_quantity'], Decimal('1'))

    def test_damage_needs_description(self) -> None:
        with self.assertRaisesRegex(ValueError, 'damage'):
            self._return('1', condition='damaged')

    def test_accept_good_return_frees_allocation(self) -> None:
        item_return = self._return('4', return_reason='Exercise over')
        self.assertRegex(item_return.return_number, r'^RET-\d{4}-0001$')

        accept_return(self.db, return_id=item_return.id, actor_id=self.keeper.id)

        self.assertEqual(item_return.status, ReturnStatus.ACCEPTED)
        self.assertEqual(item_return.accepted_by, self.keeper.id)
        self.assertEqual(self.item.allocated_stock, Decimal('0'))
        self.assertEqual(self.item.current_stock, Decimal('10'))
        allocation = self._allocation()
        self.assertEqual(allocation.status, AllocationStatus.RETURNED)
        self.assertIsNotNone(allocation.returned_at)
        self.assertEqual(list_holdings(self.db, user_id=self.requester.id), [])

    def test_partial_return_keeps_allocation_active(self) -> None:
        item_return = self._return('1')
        accept_return(self.db, return_id=item_return.id, actor_id=self.keeper.id)
        allocation = self._allocation()
        self.assertEqual(allocation.status, AllocationStatus.ACTIVE)
        self.assertEqual(allocation.returned_quantity, Decimal('1'))
        self.assertEqual(self.item.allocated_stock, Decimal('3'))

    def test_lost_return_writes_off_stock(self) -> None:
        item_return = self._return('4', condition='lost', damage_description='Lost during river crossing')
        accept_return(self.db, return_id=item_return.id, actor_id=self.keeper.id)

        self.assertEqual(self.item.current_stock, Decimal('6'))
        self.assertEqual(self.item.allocated_stock, Decimal('0'))
        self.assertEqual(self._allocation().status, AllocationStatus.LOST)
        movement = self.db.execute(
            select(StockMovement).where(StockMovement.reference_type == 'returns')
        ).scalar_one()
        self.assertEqual(movement.movement_type, MovementType.LOSS)

    def test_reject_needs_reason_and_releases_quantity(self) -> None:
        item_return = self._return('4')
        with self.assertRaises(ValueError):
            reject_return(self.db, return_id=item_return.id, actor_id=self.keeper.id, reason=' ')
        reject_return(self.db, return_id=item_return.id, actor_id=self.keeper.id, reason='Wrong item brought')
        self.assertEqual(item_return.status, ReturnStatus.REJECTED)
        self.assertEqual(self.item.allocated_stock, Decimal('4'))

        # A rejected return no longer blocks a new one.
        self._return('4')
        with self.assertRaisesRegex(ValueError, 'pending'):
            accept_return(self.db, return_id=item_return.id, actor_id=self.keeper.id)

    def test_list_returns_scoped_to_holder(self) -> None:
        self._return('1')
        self.assertEqual(len(list_returns(self.db, actor_id=self.requester.id, actor_role=UserRole.SEMI_USER)), 1)
        self.assertEqual(len(list_returns(self.db, actor_id=self.bystander.id, actor_role=UserRole.SEMI_USER)), 0)
        self.assertEqual(len(list_returns(self.db, actor_id=self.keeper.id, actor_role=UserRole.USER)), 1)
