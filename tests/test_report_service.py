from __future__ import annotations

from datetime import date
from decimal import Decimal

from app.models import ItemCategory, UserRole
from app.services.audit_service import log_audit
from app.services.errors import NotFoundError
from app.services.receipt_service import create_receipt, receipt_stats, transition_receipt
from app.services.report_service import (
    dashboard,
    item_history,
    pending_approvals,
    receipt_register,
    requisition_summary,
    stock_summary,
    system_stats,
)
from app.services.requisition_service import create_requisition, transition_requisition
from tests.db_support import DatabaseTestCase, make_item, make_user, receipt_header


class ReportServiceTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.keeper = make_user(self.db, 'keeper', UserRole.USER, full_name='Cpl Keeper')
        self.admin = make_user(self.db, 'admin', UserRole.ADMIN)
        self.chief = make_user(self.db, 'chief', UserRole.SUPER_ADMIN)
        self.radio = make_item(
            self.db, 'Radio set', category=ItemCategory.CAPITAL_ASSET, current_stock='4', unit_price='1000.00'
        )
        self.boots = make_item(
            self.db, 'Combat boots', category=ItemCategory.NON_CONSUMABLE, current_stock='30', unit_price='50.00'
        )

    def _receipt(self, receipt_date: date, item, quantity: str, rate: str, *, challan: str, save_as='submitted'):
        return create_receipt(
            self.db,
            actor_id=self.keeper.id,
            header=receipt_header(receipt_date=receipt_date, challan_date=receipt_date, challan_number=challan),
            items=[
                {'item_id': item.id, 'challan_quantity': quantity, 'received_quantity': quantity, 'unit_rate': rate}
            ],
            save_as=save_as,
        )

    def _act(self, receipt, actor, action: str) -> None:
        transition_receipt(self.db, receipt_id=receipt.id, actor_id=actor.id, actor_role=actor.role, action=action)


class ReceiptStatsTests(ReportServiceTestCase):
    def test_monthly_trend_covers_twelve_calendar_months(self) -> None:
        self._receipt(date(2023, 6, 2), self.radio, '1', '1000', challan='CH-OLD')
        self._receipt(date(2023, 7, 5), self.radio, '2', '1000', challan='CH-JUL')
        self._receipt(date(2024, 6, 1), self.boots, '10', '50', challan='CH-JUN')

        stats = receipt_stats(self.db, actor_role=UserRole.SUPER_ADMIN, today=date(2024, 6, 15))

        trend = {row['month']: row for row in stats['monthly_trend']}
        self.assertEqual(list(trend), ['2024-06', '2023-07'])
        self.assertEqual(trend['2023-07']['count'], 1)
        self.assertEqual(trend['2023-07']['total_value'], Decimal('2000'))
        self.assertEqual(trend['2024-06']['total_value'], Decimal('500'))

    def test_trend_window_crosses_year_start(self) -> None:
        self._receipt(date(2023, 1, 31), self.radio, '1', '1000', challan='CH-JAN')
        self._receipt(date(2023, 2, 1), self.radio, '1', '1000', challan='CH-FEB')
        stats = receipt_stats(self.db, actor_role=UserRole.ADMIN, today=date(2024, 1, 10))
        self.assertEqual([row['month'] for row in stats['monthly_trend']], ['2023-02'])

    def test_status_breakdown_and_pending_counts_follow_role(self) -> None:
        self._receipt(date(2024, 3, 1), self.radio, '1', '1000', challan='CH-1', save_as='draft')
        self._receipt(date(2024, 3, 2), self.radio, '1', '1000', challan='CH-2')
        verified = self._receipt(date(2024, 3, 3), self.boots, '5', '50', challan='CH-3')
        self._act(verified, self.admin, 'verify')

        stats = receipt_stats(self.db, actor_role=UserRole.SUPER_ADMIN, today=date(2024, 3, 20))
        self.assertEqual(
            stats['status_breakdown'],
            [
                {'status': 'draft', 'count': 1},
                {'status': 'submitted', 'count': 1},
                {'status': 'verified', 'count': 1},
            ],
        )
        self.assertEqual(stats['pending_counts'], {'verifications': 1, 'approvals': 1})

        admin_stats = receipt_stats(self.db, actor_role=UserRole.ADMIN, today=date(2024, 3, 20))
        self.assertEqual(admin_stats['pending_counts'], {'verifications': 1})
        keeper_stats = receipt_stats(self.db, actor_role=UserRole.USER, today=date(2024, 3, 20))
        self.assertEqual(keeper_stats['pending_counts'], {})


class RegisterAndHistoryTests(ReportServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.march = self._receipt(date(2024, 3, 5), self.radio, '2', '1000', challan='CH-MAR')
        self.april = self._receipt(date(2024, 4, 9), self.boots, '20', '50', challan='CH-APR')
        self._act(self.april, self.admin, 'verify')
        self._act(self.april, self.chief, 'approve')

    def test_register_filters_by_date_status_and_category(self) -> None:
        rows = receipt_register(self.db)
        self.assertEqual([row['challan_number'] for row in rows], ['CH-APR', 'CH-MAR'])
        self.assertEqual(rows[0]['received_by_name'], 'Cpl Keeper')
        self.assertEqual(rows[0]['total_value'], Decimal('1000'))

        rows = receipt_register(self.db, date_from=date(2024, 4, 1))
        self.assertEqual([row['challan_number'] for row in rows], ['CH-APR'])
        rows = receipt_register(self.db, status='submitted')
        self.assertEqual([row['challan_number'] for row in rows], ['CH-MAR'])
        rows = receipt_register(self.db, item_category='capital_asset')
        self.assertEqual([row['challan_number'] for row in rows], ['CH-MAR'])

        with self.assertRaisesRegex(ValueError, 'Invalid receipt status'):
            receipt_register(self.db, status='lost')

    def test_item_history_lists_receipt_lines(self) -> None:
        self._receipt(date(2024, 5, 1), self.boots, '4', '55', challan='CH-MAY')
        history = item_history(self.db, item_id=self.boots.id)
        self.assertEqual(history['item']['nomenclature'], 'Combat boots')
        self.assertEqual(history['count'], 2)
        self.assertEqual([row['challan_number'] for row in history['receipts']], ['CH-MAY', 'CH-APR'])
        self.assertEqual(history['receipts'][1]['grn_number'], self.april.grn_number)
        self.assertEqual(history['receipts'][0]['total_value'], Decimal('220'))

        limited = item_history(self.db, item_id=self.boots.id, date_to=date(2024, 4, 30))
        self.assertEqual(limited['count'], 1)
        with self.assertRaises(NotFoundError):
            item_history(self.db, item_id=404)

    def test_pending_approvals_by_kind(self) -> None:
        verified = self._receipt(date(2024, 5, 2), self.radio, '1', '1000', challan='CH-VER')
        self._act(verified, self.admin, 'verify')

        waiting_verification = pending_approvals(self.db, kind='verification')
        self.assertEqual([row['id'] for row in waiting_verification], [self.march.id])
        waiting_approval = pending_approvals(self.db, kind='approval')
        self.assertEqual([row['id'] for row in waiting_approval], [verified.id])
        with self.assertRaises(ValueError):
            pending_approvals(self.db, kind='issue')

    def test_stock_summary_values_stock(self) -> None:
        summary = stock_summary(self.db)
        boots = next(row for row in summary['items'] if row['item_id'] == self.boots.id)
        self.assertEqual(boots['current_stock'], Decimal('50'))
        self.assertEqual(boots['stock_value'], Decimal('2500'))
        self.assertEqual(summary['totals']['stock_value'], Decimal('6500'))
        self.assertEqual(summary['totals']['item_count'], 2)


class RequisitionSummaryTests(ReportServiceTestCase):
    def test_summary_groups_by_status_and_department(self) -> None:
        signals = make_user(self.db, 'signaller', UserRole.SEMI_USER, department='Signals')
        stores = make_user(self.db, 'storeman', UserRole.SEMI_USER, department=None)
        first = create_requisition(
            self.db,
            actor_id=signals.id,
            purpose='Exercise',
            items=[{'item_id': self.radio.id, 'quantity_requested': '2'}],
            save_as='pending',
        )
        create_requisition(
            self.db,
            actor_id=signals.id,
            purpose='Patrol',
            items=[{'item_id': self.boots.id, 'quantity_requested': '4'}],
            save_as='pending',
        )
        create_requisition(
            self.db,
            actor_id=stores.id,
            purpose='Stocktake',
            items=[{'item_id': self.boots.id, 'quantity_requested': '1'}],
        )
        transition_requisition(
            self.db, requisition_id=first.id, actor_id=self.admin.id, actor_role=UserRole.ADMIN, action='approve'
        )

        summary = requisition_summary(self.db)
        self.assertEqual(summary['total'], 3)
        by_status = {row['status']: row for row in summary['by_status']}
        self.assertEqual(set(by_status), {'approved', 'pending', 'draft'})
        self.assertEqual(by_status['approved']['total_value'], Decimal('2000'))
        by_department = {row['department']: row['count'] for row in summary['by_department']}
        self.assertEqual(by_department, {'Signals': 2, 'Unassigned': 1})


class DashboardAndSystemStatsTests(ReportServiceTestCase):
    def test_system_stats_counts_active_records(self) -> None:
        make_user(self.db, 'retired', UserRole.USER, is_active=False)
        make_item(self.db, 'Old radio', category=ItemCategory.CAPITAL_ASSET, is_active=False)
        self._receipt(date(2024, 3, 1), self.radio, '1', '1000', challan='CH-1')
        log_audit(self.db, actor_user_id=self.admin.id, action='RECEIPT_CREATED', table_name='stock_receipts')
        log_audit(self.db, actor_user_id=self.admin.id, action='RECEIPT_CREATED', table_name='stock_receipts')
        self.db.flush()

        stats = system_stats(self.db)
        self.assertEqual(stats['users']['total'], 3)
        self.assertEqual(
            stats['users']['by_role'],
            [
                {'role': 'admin', 'count': 1},
                {'role': 'super_admin', 'count': 1},
                {'role': 'user', 'count': 1},
            ],
        )
        self.assertEqual(stats['receipts'], {'total': 1, 'by_status': [{'status': 'submitted', 'count': 1}]})
        self.assertEqual(stats['items']['total'], 2)
        self.assertEqual([(row['action'], row['count']) for row in stats['recent_activity']], [('RECEIPT_CREATED', 2)])

    def test_dashboard_counts_for_keeper(self) -> None:
        self._receipt(date(2024, 3, 1), self.radio, '1', '1000', challan='CH-1')
        data = dashboard(self.db, actor_id=self.keeper.id, actor_role=UserRole.USER)
        self.assertEqual(data['my_receipts']['submitted'], 1)
        self.assertEqual(data['awaiting_issue'], 0)
        self.assertNotIn('catalog', data)
        self.assertNotIn('pending_verifications', data)
