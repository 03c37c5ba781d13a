from __future__ import annotations

import argparse
import getpass

from app.db import SessionLocal
from app.models import UserRole
from app.services.audit_service import log_audit
from app.services.user_service import create_user, get_user_by_username, restore_super_admin


def create_superadmin(*, username: str, password: str, full_name: str, email: str | None = None) -> int:
    with SessionLocal() as db:
        if get_user_by_username(db, username=username):
            raise SystemExit(f'User {username!r} already exists; pass --reset to restore it')
        user = create_user(
            db,
            username=username,
            password=password,
            full_name=full_name,
            role=UserRole.SUPER_ADMIN.value,
            email=email,
        )
        log_audit(db, actor_user_id=None, action='SUPERADMIN_CREATED', table_name='users', record_id=user.id)
        db.commit()
        return user.id


def reset_superadmin(*, username: str, password: str) -> int:
    with SessionLocal() as db:
        user = restore_super_admin(db, username=username, new_password=password)
        log_audit(db, actor_user_id=None, action='SUPERADMIN_RESET', table_name='users', record_id=user.id)
        db.commit()
        return user.id


def main() -> None:
    parser = argparse.ArgumentParser(description='Create the first super admin account, or restore an existing one.')
    parser.add_argument('--username', required=True)
    parser.add_argument('--full-name', default=None, help='Required when creating the account.')
    parser.add_argument('--email', default=None)
    parser.add_argument(
        '--password',
        default=None,
        help='Password for the account. Prompted for when omitted.',
    )
    parser.add_argument(
        '--reset',
        action='store_true',
        help='Reset the password of an existing user, reactivate it and make it a super admin.',
    )
    args = parser.parse_args()
    if not args.reset and not args.full_name:
        parser.error('--full-name is required when creating a super admin')

    password = args.password or getpass.getpass('Password: ')
    try:
        if args.reset:
            user_id = reset_superadmin(username=args.username, password=password)
        else:
            user_id = create_superadmin(
                username=args.username,
                password=password,
                full_name=args.full_name,
                email=args.email,
            )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    verb = 'restored' if args.reset else 'created'
    print(f'Super admin {verb}: id={user_id}, username={args.username}')


if __name__ == '__main__':
    main()
