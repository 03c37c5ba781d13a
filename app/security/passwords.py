import re

from pwdlib import PasswordHash


password_hash = PasswordHash.recommended()

MIN_PASSWORD_LENGTH = 8


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str) -> bool:
    return password_hash.verify(raw_password, hashed_password)


def validate_password_strength(raw_password: str) -> None:
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters long')
    if not re.search(r'[a-z]', raw_password):
        raise ValueError('Password must contain a lowercase letter')
    if not re.search(r'[A-Z]', raw_password):
        raise ValueError('Password must contain an uppercase letter')
    if not re.search(r'\d', raw_password):
        raise ValueError('Password must contain a number')
