from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.db import get_db
from app.main import app
from app.models import AuditLog, AuthEvent, Item, UserRole
from tests.db_support import TEST_PASSWORD, make_engine, make_item, make_user


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        with self.SessionLocal() as db:
            self.requester_id = make_user(db, 'requester', UserRole.SEMI_USER).id
            self.keeper_id = make_user(db, 'keeper', UserRole.USER).id
            self.admin_id = make_user(db, 'admin', UserRole.ADMIN).id
            self.chief_id = make_user(db, 'chief', UserRole.SUPER_ADMIN).id
            make_user(db, 'retired', UserRole.USER, is_active=False)
            self.item_id = make_item(db, 'Radio set', current_stock='5', unit_price='1000.00').id
            db.commit()

        def override_get_db():
            with self.SessionLocal() as db:
                yield db

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.tokens: dict[str, str] = {}

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.client.close()
        self.engine.dispose()

    def login(self, username: str) -> str:
        response = self.client.post('/api/auth/login', json={'username': username, 'password': TEST_PASSWORD})
        self.assertEqual(response.status_code, 200, response.text)
        # Force every later call through the bearer header.
        self.client.cookies.clear()
        return response.json()['token']

    def as_user(self, username: str) -> dict:
        if username not in self.tokens:
            self.tokens[username] = self.login(username)
        return {'Authorization': f'Bearer {self.tokens[username]}'}

    def query(self, statement):
        with self.SessionLocal() as db:
            return db.execute(statement).scalars().all()


class AuthApiTests(ApiTestCase):
    def test_login_returns_token_and_permissions(self) -> None:
        response = self.client.post('/api/auth/login', json={'username': 'keeper', 'password': TEST_PASSWORD})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['token_type'], 'bearer')
        self.assertIn('issue_items', body['user']['permissions'])
        self.assertIn(settings.session_cookie_name, response.cookies)

        events = self.query(select(AuthEvent))
        self.assertEqual([(event.success, event.failure_reason) for event in events], [(True, None)])

    def test_failed_logins_share_one_message(self) -> None:
        bad_password = self.client.post('/api/auth/login', json={'username': 'keeper', 'password': 'wrong'})
        unknown = self.client.post('/api/auth/login', json={'username': 'ghost', 'password': 'wrong'})
        inactive = self.client.post('/api/auth/login', json={'username': 'retired', 'password': TEST_PASSWORD})
        for response in (bad_password, unknown, inactive):
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()['detail'], 'Invalid username or password')

        reasons = sorted(event.failure_reason for event in self.query(select(AuthEvent)))
        self.assertEqual(reasons, ['BAD_PASSWORD', 'INACTIVE_USER', 'UNKNOWN_USERNAME'])

    def test_me_requires_session(self) -> None:
        self.assertEqual(self.client.get('/api/auth/me').status_code, 401)
        response = self.client.get('/api/auth/me', headers=self.as_user('admin'))
        self.assertEqual(response.json()['username'], 'admin')

    def test_logout_revokes_token(self) -> None:
        headers = self.as_user('keeper')
        self.assertEqual(self.client.post('/api/auth/logout', headers=headers).status_code, 200)
        self.assertEqual(self.client.get('/api/auth/me', headers=headers).status_code, 401)

    def test_cookie_session_needs_csrf_header_for_writes(self) -> None:
        self.client.post('/api/auth/login', json={'username': 'keeper', 'password': TEST_PASSWORD})
        self.assertEqual(self.client.get('/api/auth/me').status_code, 200)
        response = self.client.put('/api/auth/profile', json={'rank': 'Sgt'})
        self.assertEqual(response.status_code, 403)

        csrf = self.client.cookies.get('csrf_token')
        response = self.client.put('/api/auth/profile', json={'rank': 'Sgt'}, headers={'X-CSRF-Token': csrf})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['rank'], 'Sgt')


class PermissionApiTests(ApiTestCase):
    def test_semi_user_cannot_manage_catalog_or_see_audit(self) -> None:
        headers = self.as_user('requester')
        response = self.client.post(
            '/api/items',
            json={'nomenclature': 'Tent', 'category': 'non_consumable', 'unit_of_measure': 'each'},
            headers=headers,
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get('/api/audit', headers=headers).status_code, 403)
        self.assertEqual(self.client.get('/api/receipts', headers=headers).status_code, 403)
        self.assertEqual(self.client.get('/api/items', headers=headers).status_code, 200)

    def test_only_super_admin_manages_users(self) -> None:
        payload = {'username': 'newbie', 'password': 'Welcome123', 'full_name': 'New Bie', 'role': 'user'}
        response = self.client.post('/api/users', json=payload, headers=self.as_user('admin'))
        self.assertEqual(response.status_code, 403)
        response = self.client.post('/api/users', json=payload, headers=self.as_user('chief'))
        self.assertEqual(response.status_code, 201, response.text)

        response = self.client.post(f'/api/users/{self.chief_id}/deactivate', headers=self.as_user('chief'))
        self.assertEqual(response.status_code, 403)

    def test_missing_record_is_404(self) -> None:
        response = self.client.get('/api/items/9999', headers=self.as_user('keeper'))
        self.assertEqual(response.status_code, 404)


class ReceiptApiTests(ApiTestCase):
    def _create_receipt(self, save_as: str = 'submitted') -> dict:
        response = self.client.post(
            '/api/receipts',
            json={
                'receipt_date': '2024-03-12',
                'challan_number': 'CH-1',
                'challan_date': '2024-03-11',
                'supplier_name': 'Eastern Supplies',
                'items': [{'item_id': self.item_id, 'challan_quantity': '3', 'received_quantity': '3', 'unit_rate': '1000'}],
                'save_as': save_as,
            },
            headers=self.as_user('keeper'),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_receipt_approval_chain(self) -> None:
        receipt = self._create_receipt()
        receipt_id = receipt['id']
        self.assertEqual(receipt['status'], 'submitted')

        response = self.client.post(
            f'/api/receipts/{receipt_id}/approve', json={'action': 'approve'}, headers=self.as_user('chief')
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            f'/api/receipts/{receipt_id}/verify', json={'action': 'verify'}, headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['status'], 'verified')

        response = self.client.post(
            f'/api/receipts/{receipt_id}/approve', json={'action': 'approve'}, headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            f'/api/receipts/{receipt_id}/approve', json={'action': 'approve'}, headers=self.as_user('chief')
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertTrue(response.json()['grn_number'].startswith('GRN-'))

        item = self.query(select(Item).where(Item.id == self.item_id))[0]
        self.assertEqual(float(item.current_stock), 8.0)

        actions = self.query(
            select(AuditLog.action).where(AuditLog.table_name == 'stock_receipts').order_by(AuditLog.id)
        )
        self.assertEqual(actions, ['RECEIPT_CREATED', 'RECEIPT_VERIFIED', 'RECEIPT_APPROVED'])

        trail = self.client.get(f'/api/receipts/{receipt_id}/audit', headers=self.as_user('admin'))
        self.assertEqual(len(trail.json()['data']), 3)

        voucher = self.client.get(f'/api/receipts/{receipt_id}/voucher', headers=self.as_user('keeper'))
        self.assertEqual(voucher.status_code, 200)
        self.assertIn('text/html', voucher.headers['content-type'])
        self.assertIn(response.json()['grn_number'], voucher.text)

    def test_reject_without_reason_is_400(self) -> None:
        receipt = self._create_receipt()
        response = self.client.post(
            f'/api/receipts/{receipt["id"]}/verify', json={'action': 'reject'}, headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 400)

    def test_upload_file_removed_when_audit_write_fails(self) -> None:
        receipt = self._create_receipt(save_as='draft')
        headers = self.as_user('keeper')
        failing_client = TestClient(app, raise_server_exceptions=False)
        self.addCleanup(failing_client.close)
        with (
            tempfile.TemporaryDirectory() as upload_dir,
            patch.object(settings, 'upload_dir', upload_dir),
            patch('app.routers.receipts._audit', side_effect=RuntimeError('audit table unavailable')),
        ):
            response = failing_client.post(
                f'/api/receipts/{receipt["id"]}/documents',
                files={'file': ('challan.pdf', b'%PDF-1.4 test', 'application/pdf')},
                headers=headers,
            )
            self.assertEqual(response.status_code, 500)
            self.assertEqual([path for path in Path(upload_dir).rglob('*') if path.is_file()], [])

    def test_document_upload_checks_type(self) -> None:
        receipt = self._create_receipt(save_as='draft')
        with tempfile.TemporaryDirectory() as upload_dir, patch.object(settings, 'upload_dir', upload_dir):
            rejected = self.client.post(
                f'/api/receipts/{receipt["id"]}/documents',
                files={'file': ('notes.txt', b'hello', 'text/plain')},
                headers=self.as_user('keeper'),
            )
            self.assertEqual(rejected.status_code, 400)

            accepted = self.client.post(
                f'/api/receipts/{receipt["id"]}/documents',
                files={'file': ('challan.pdf', b'%PDF-1.4 test', 'application/pdf')},
                headers=self.as_user('keeper'),
            )
            self.assertEqual(accepted.status_code, 201, accepted.text)
            document_id = accepted.json()['id']

            download = self.client.get(
                f'/api/receipts/{receipt["id"]}/documents/{document_id}', headers=self.as_user('keeper')
            )
            self.assertEqual(download.status_code, 200)
            self.assertEqual(download.content, b'%PDF-1.4 test')


class RequisitionApiTests(ApiTestCase):
    def test_requisition_issue_and_return(self) -> None:
        response = self.client.post(
            '/api/requisitions',
            json={
                'purpose': 'Field exercise',
                'items': [{'item_id': self.item_id, 'quantity_requested': '2'}],
                'save_as': 'pending',
            },
            headers=self.as_user('requester'),
        )
        self.assertEqual(response.status_code, 201, response.text)
        requisition_id = response.json()['id']

        response = self.client.post(
            f'/api/requisitions/{requisition_id}/actions',
            json={'action': 'approve'},
            headers=self.as_user('requester'),
        )
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            f'/api/requisitions/{requisition_id}/actions',
            json={'action': 'approve', 'comments': 'OK'},
            headers=self.as_user('admin'),
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['status'], 'approved')

        response = self.client.post(
            f'/api/requisitions/{requisition_id}/issue',
            json={'gate_pass_number': 'GP-1'},
            headers=self.as_user('keeper'),
        )
        self.assertEqual(response.status_code, 200, response.text)
        detail = response.json()
        self.assertEqual(detail['status'], 'issued')
        issuance = detail['issuances'][0]

        voucher = self.client.get(
            f'/api/requisitions/issuances/{issuance["id"]}/voucher', headers=self.as_user('requester')
        )
        self.assertEqual(voucher.status_code, 200)
        self.assertIn(issuance['issuance_number'], voucher.text)

        holdings = self.client.get('/api/returns/holdings', headers=self.as_user('requester')).json()
        self.assertEqual(holdings['count'], 1)

        response = self.client.post(
            '/api/returns',
            json={'issuance_id': issuance['id'], 'quantity': '2', 'condition': 'good'},
            headers=self.as_user('requester'),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return_id = response.json()['id']

        response = self.client.post(
            f'/api/returns/{return_id}/decision', json={'action': 'accept'}, headers=self.as_user('requester')
        )
        self.assertEqual(response.status_code, 403)
        response = self.client.post(
            f'/api/returns/{return_id}/decision', json={'action': 'accept'}, headers=self.as_user('keeper')
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['status'], 'accepted')

        item = self.query(select(Item).where(Item.id == self.item_id))[0]
        self.assertEqual(float(item.allocated_stock), 0.0)
        self.assertEqual(float(item.current_stock), 5.0)

        trail = self.client.get(
            '/api/audit', params={'table_name': 'returns', 'record_id': return_id}, headers=self.as_user('admin')
        ).json()
        self.assertEqual([row['action'] for row in trail['data']], ['RETURN_ACCEPTED', 'RETURN_CREATED'])


class ReportApiTests(ApiTestCase):
    def test_stock_summary_csv(self) -> None:
        response = self.client.get('/api/reports/stock-summary/export.csv', headers=self.as_user('admin'))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/csv'))
        lines = response.text.strip().splitlines()
        self.assertTrue(lines[0].startswith('Item Code,Nomenclature'))
        self.assertIn('Radio set', lines[1])

    def test_reports_need_permission(self) -> None:
        self.assertEqual(
            self.client.get('/api/reports/stock-summary', headers=self.as_user('keeper')).status_code, 403
        )
        self.assertEqual(
            self.client.get('/api/reports/system-stats', headers=self.as_user('admin')).status_code, 403
        )
        stats = self.client.get('/api/reports/system-stats', headers=self.as_user('chief'))
        self.assertEqual(stats.json()['users']['total'], 4)

    def test_dashboard_blocks_follow_role(self) -> None:
        requester = self.client.get('/api/reports/dashboard', headers=self.as_user('requester')).json()
        self.assertNotIn('pending_verifications', requester)
        admin = self.client.get('/api/reports/dashboard', headers=self.as_user('admin')).json()
        self.assertIn('pending_verifications', admin)
        self.assertIn('catalog', admin)

    def _approved_receipt(self) -> dict:
        response = self.client.post(
            '/api/receipts',
            json={
                'receipt_date': '2024-03-12',
                'challan_number': 'CH-77',
                'challan_date': '2024-03-11',
                'supplier_name': 'Eastern Supplies',
                'items': [{'item_id': self.item_id, 'challan_quantity': '2', 'received_quantity': '2', 'unit_rate': '900'}],
                'save_as': 'submitted',
            },
            headers=self.as_user('keeper'),
        )
        self.assertEqual(response.status_code, 201, response.text)
        receipt_id = response.json()['id']
        self.client.post(f'/api/receipts/{receipt_id}/verify', json={'action': 'verify'}, headers=self.as_user('admin'))
        response = self.client.post(
            f'/api/receipts/{receipt_id}/approve', json={'action': 'approve'}, headers=self.as_user('chief')
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_receipt_register_csv(self) -> None:
        receipt = self._approved_receipt()
        response = self.client.get(
            '/api/reports/receipt-register/export.csv', params={'status': 'approved'}, headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 200)
        lines = response.text.strip().splitlines()
        self.assertEqual(
            lines[0], 'GRN,Receipt Date,Challan No,Supplier,Received From,Status,Items,Total Value,Received By'
        )
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith(f'{receipt["grn_number"]},2024-03-12,CH-77,Eastern Supplies'))

        bad_status = self.client.get(
            '/api/reports/receipt-register/export.csv', params={'status': 'lost'}, headers=self.as_user('admin')
        )
        self.assertEqual(bad_status.status_code, 400)
        self.assertEqual(
            self.client.get('/api/reports/receipt-register', headers=self.as_user('keeper')).status_code, 403
        )

    def test_item_history_csv_is_audited(self) -> None:
        receipt = self._approved_receipt()
        response = self.client.get(
            f'/api/reports/item-history/{self.item_id}/export.csv', headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 200)
        item_code = self.query(select(Item.item_code).where(Item.id == self.item_id))[0]
        self.assertIn(f'item-history-{item_code}.csv', response.headers['content-disposition'])
        lines = response.text.strip().splitlines()
        self.assertEqual(
            lines[0],
            'GRN,Receipt Date,Challan No,Supplier,Status,Challan Qty,Received Qty,Unit Rate,Total Value,Received By',
        )
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith(f'{receipt["grn_number"]},2024-03-12,CH-77,Eastern Supplies,approved'))

        exported = self.query(
            select(AuditLog).where(AuditLog.action == 'ITEM_HISTORY_EXPORTED_CSV').order_by(AuditLog.id)
        )
        self.assertEqual([(row.table_name, row.record_id) for row in exported], [('items_master', self.item_id)])

        missing = self.client.get('/api/reports/item-history/9999/export.csv', headers=self.as_user('admin'))
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(
            self.client.get(
                f'/api/reports/item-history/{self.item_id}/export.csv', headers=self.as_user('keeper')
            ).status_code,
            403,
        )

    def test_audit_log_csv(self) -> None:
        self.assertEqual(self.client.get('/api/audit/export.csv', headers=self.as_user('keeper')).status_code, 403)
        self._approved_receipt()
        response = self.client.get(
            '/api/audit/export.csv', params={'table_name': 'stock_receipts'}, headers=self.as_user('admin')
        )
        self.assertEqual(response.status_code, 200)
        lines = response.text.strip().splitlines()
        self.assertEqual(lines[0], 'Timestamp,Username,Action,Table,Record,Old Value,New Value,IP Address')
        self.assertEqual(len(lines), 4)
        self.assertTrue(any(',chief,RECEIPT_APPROVED,stock_receipts,' in line for line in lines[1:]))

        exported = self.query(select(AuditLog.user_id).where(AuditLog.action == 'AUDIT_LOG_EXPORTED_CSV'))
        self.assertEqual(exported, [self.admin_id])

    def test_pending_approvals_and_requisition_summary(self) -> None:
        self.assertEqual(
            self.client.get('/api/reports/pending-approvals', headers=self.as_user('keeper')).status_code, 403
        )
        bad_type = self.client.get(
            '/api/reports/pending-approvals', params={'type': 'issue'}, headers=self.as_user('admin')
        )
        self.assertEqual(bad_type.status_code, 400)

        self._approved_receipt()
        waiting = self.client.get(
            '/api/reports/pending-approvals', params={'type': 'verification'}, headers=self.as_user('admin')
        )
        self.assertEqual(waiting.json()['count'], 0)

        summary = self.client.get('/api/reports/requisition-summary', headers=self.as_user('admin'))
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json(), {'by_status': [], 'by_department': [], 'total': 0})

    def test_receipt_stats_counts_follow_role(self) -> None:
        self.client.post(
            '/api/receipts',
            json={
                'receipt_date': '2024-03-12',
                'challan_number': 'CH-78',
                'challan_date': '2024-03-11',
                'supplier_name': 'Eastern Supplies',
                'items': [{'item_id': self.item_id, 'challan_quantity': '1', 'received_quantity': '1', 'unit_rate': '900'}],
                'save_as': 'submitted',
            },
            headers=self.as_user('keeper'),
        )
        admin = self.client.get('/api/receipts/stats', headers=self.as_user('admin')).json()
        self.assertEqual(admin['pending_counts'], {'verifications': 1})
        self.assertEqual(admin['status_breakdown'], [{'status': 'submitted', 'count': 1}])
        chief = self.client.get('/api/receipts/stats', headers=self.as_user('chief')).json()
        self.assertEqual(chief['pending_counts'], {'verifications': 1, 'approvals': 0})
        keeper = self.client.get('/api/receipts/stats', headers=self.as_user('keeper')).json()
        self.assertEqual(keeper['pending_counts'], {})

    def test_health(self) -> None:
        response = self.client.get('/health')
        self.assertEqual(response.json()['status'], 'ok')
        self.assertEqual(response.headers['x-frame-options'], 'DENY')
        self.assertNotIn('cache-control', response.headers)

        api_response = self.client.get('/api/auth/me', headers=self.as_user('keeper'))
        self.assertEqual(api_response.headers['cache-control'], 'no-store')
