from __future__ import annotations

from unittest.mock import patch

from sqlalchemy import select

from app.create_superadmin import create_superadmin, reset_superadmin
from app.models import AuditLog, User, UserRole
from app.security.passwords import verify_password
from app.security.sessions import create_web_session, load_user_from_token
from app.services.errors import NotFoundError
from app.services.user_service import (
    change_password,
    create_user,
    get_user,
    list_verifying_officers,
    reset_password,
    restore_super_admin,
    set_user_active,
    update_user,
)
from tests.db_support import TEST_PASSWORD, DatabaseTestCase, make_user


class UserServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.chief = make_user(self.db, 'chief', UserRole.SUPER_ADMIN)

    def test_create_user_validates_input(self) -> None:
        user = create_user(
            self.db,
            username='sgt_khan',
            password='Secret123',
            full_name='Sgt. Khan',
            role='user',
            email='KHAN@Example.org',
        )
        self.assertEqual(user.role, UserRole.USER)
        self.assertEqual(user.email, 'khan@example.org')
        self.assertTrue(verify_password('Secret123', user.password_hash))

        with self.assertRaisesRegex(ValueError, 'already exists'):
            create_user(self.db, username='SGT_KHAN', password='Secret123', full_name='Other')
        with self.assertRaisesRegex(ValueError, 'Email'):
            create_user(
                self.db, username='khan2', password='Secret123', full_name='Other', email='khan@example.org'
            )
        with self.assertRaises(ValueError):
            create_user(self.db, username='ab', password='Secret123', full_name='Short')
        with self.assertRaisesRegex(ValueError, 'uppercase'):
            create_user(self.db, username='weakling', password='secret123', full_name='Weak')

    def test_cannot_change_own_role(self) -> None:
        with self.assertRaises(PermissionError):
            update_user(self.db, user_id=self.chief.id, actor_id=self.chief.id, changes={'role': 'admin'})

    def test_update_user_returns_previous_values(self) -> None:
        user = make_user(self.db, 'clerk', UserRole.SEMI_USER)
        updated, previous = update_user(
            self.db, user_id=user.id, actor_id=self.chief.id, changes={'role': 'user', 'rank': 'Cpl'}
        )
        self.assertEqual(updated.role, UserRole.USER)
        self.assertEqual(previous, {'role': 'semi_user', 'rank': None})

    def test_deactivation_revokes_sessions(self) -> None:
        user = make_user(self.db, 'clerk')
        token = create_web_session(self.db, user.id, ip=None, user_agent=None)
        self.assertEqual(load_user_from_token(self.db, token).id, user.id)

        set_user_active(self.db, user_id=user.id, actor_id=self.chief.id, active=False)
        self.assertFalse(user.is_active)
        self.assertIsNone(load_user_from_token(self.db, token))

        with self.assertRaises(PermissionError):
            set_user_active(self.db, user_id=self.chief.id, actor_id=self.chief.id, active=False)

    def test_reset_password_not_for_self(self) -> None:
        user = make_user(self.db, 'clerk')
        reset_password(self.db, user_id=user.id, actor_id=self.chief.id, new_password='NewPass99')
        self.assertTrue(verify_password('NewPass99', user.password_hash))
        with self.assertRaises(PermissionError):
            reset_password(self.db, user_id=self.chief.id, actor_id=self.chief.id, new_password='NewPass99')

    def test_change_password_checks_current(self) -> None:
        with self.assertRaisesRegex(ValueError, 'incorrect'):
            change_password(self.db, user_id=self.chief.id, current_password='nope', new_password='Another12')
        with self.assertRaisesRegex(ValueError, 'differ'):
            change_password(
                self.db, user_id=self.chief.id, current_password=TEST_PASSWORD, new_password=TEST_PASSWORD
            )
        change_password(self.db, user_id=self.chief.id, current_password=TEST_PASSWORD, new_password='Another12')
        self.assertTrue(verify_password('Another12', self.chief.password_hash))

    def test_verifying_officers_are_active_admins(self) -> None:
        admin = make_user(self.db, 'admin', UserRole.ADMIN, full_name='A Admin')
        make_user(self.db, 'retired', UserRole.ADMIN, is_active=False)
        make_user(self.db, 'keeper', UserRole.USER)
        officers = list_verifying_officers(self.db)
        self.assertEqual({user.id for user in officers}, {admin.id, self.chief.id})

    def test_get_missing_user(self) -> None:
        with self.assertRaises(NotFoundError):
            get_user(self.db, user_id=404)

    def test_restore_super_admin(self) -> None:
        user = make_user(self.db, 'locked_out', UserRole.USER, is_active=False)
        token = create_web_session(self.db, user.id, ip=None, user_agent=None)

        restore_super_admin(self.db, username='LOCKED_OUT', new_password='Recover123')

        self.assertEqual(user.role, UserRole.SUPER_ADMIN)
        self.assertTrue(user.is_active)
        self.assertTrue(verify_password('Recover123', user.password_hash))
        self.assertIsNone(load_user_from_token(self.db, token))

        with self.assertRaisesRegex(ValueError, 'uppercase'):
            restore_super_admin(self.db, username='locked_out', new_password='recover123')
        with self.assertRaises(NotFoundError):
            restore_super_admin(self.db, username='ghost', new_password='Recover123')


class SuperAdminScriptTests(DatabaseTestCase):
    def test_reset_restores_existing_account(self) -> None:
        with self.SessionLocal() as db:
            user_id = make_user(db, 'chief', UserRole.ADMIN, is_active=False).id
            db.commit()

        with patch('app.create_superadmin.SessionLocal', self.SessionLocal):
            with self.assertRaises(SystemExit):
                create_superadmin(username='chief', password='Recover123', full_name='Chief')
            self.assertEqual(reset_superadmin(username='chief', password='Recover123'), user_id)

        user = self.db.get(User, user_id)
        self.assertEqual(user.role, UserRole.SUPER_ADMIN)
        self.assertTrue(user.is_active)
        actions = self.db.execute(select(AuditLog.action).where(AuditLog.record_id == user_id)).scalars().all()
        self.assertEqual(actions, ['SUPERADMIN_RESET'])

    def test_create_new_super_admin(self) -> None:
        with patch('app.create_superadmin.SessionLocal', self.SessionLocal):
            user_id = create_superadmin(username='first_chief', password='Welcome123', full_name='First Chief')
        user = self.db.get(User, user_id)
        self.assertEqual(user.role, UserRole.SUPER_ADMIN)
