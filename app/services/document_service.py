from __future__ import annotations

import re
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models import Document, User
from app.services.errors import NotFoundError

CHUNK_SIZE = 1024 * 1024
SAFE_NAME_RE = re.compile(r'[^A-Za-z0-9._-]+')


def upload_root() -> Path:
    return Path(settings.upload_dir).resolve()


def _safe_suffix(file_name: str) -> str:
    suffix = Path(file_name).suffix.lower()
    return SAFE_NAME_RE.sub('', suffix)[:10]


def _display_name(file_name: str | None) -> str:
    name = Path(file_name or '').name.strip()
    return name[:255] or 'document'


def _write_stream(target: Path, stream: BinaryIO, max_bytes: int) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    stream.seek(0)
    written = 0
    with open(target, 'wb') as buffer:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                break
            buffer.write(chunk)
    if written > max_bytes:
        target.unlink(missing_ok=True)
        raise ValueError(f'File exceeds the {max_bytes // (1024 * 1024)} MB upload limit')
    if written == 0:
        target.unlink(missing_ok=True)
        raise ValueError('Uploaded file is empty')
    return written


def store_document(
    db: Session,
    *,
    stream: BinaryIO,
    file_name: str | None,
    content_type: str | None,
    uploaded_by: int,
    receipt_id: int | None = None,
    requisition_id: int | None = None,
) -> Document:
    if (receipt_id is None) == (requisition_id is None):
        raise ValueError('A document belongs to exactly one receipt or requisition')
    content_type = (content_type or '').split(';')[0].strip().lower()
    if content_type not in settings.upload_allowed_types_set():
        raise ValueError('Only PDF, JPEG and PNG files can be uploaded')

    owner_dir = f'receipts/{receipt_id}' if receipt_id is not None else f'requisitions/{requisition_id}'
    display_name = _display_name(file_name)
    relative_path = f'{owner_dir}/{uuid4().hex}{_safe_suffix(display_name)}'
    target = upload_root() / relative_path
    size = _write_stream(target, stream, settings.upload_max_bytes)

    document = Document(
        receipt_id=receipt_id,
        requisition_id=requisition_id,
        file_name=display_name,
        file_path=relative_path,
        file_type=content_type,
        file_size=size,
        uploaded_by=uploaded_by,
    )
    try:
        db.add(document)
        db.flush()
    except Exception:
        target.unlink(missing_ok=True)
        raise
    return document


def get_document(db: Session, *, document_id: int) -> Document:
    document = db.get(Document, document_id)
    if not document:
        raise NotFoundError('Document not found')
    return document


def document_path(document: Document) -> Path:
    root = upload_root()
    target = (root / document.file_path).resolve()
    if root not in target.parents:
        raise NotFoundError('Document file not found')
    if not target.is_file():
        raise NotFoundError('Document file not found')
    return target


def stored_file_path(document: Document) -> Path:
    return (upload_root() / document.file_path).resolve()


def delete_document(db: Session, *, document: Document) -> Path:
    """Delete the row; the caller removes the returned file once the transaction commits."""
    target = stored_file_path(document)
    db.delete(document)
    db.flush()
    return target


def list_documents(db: Session, *, receipt_id: int | None = None, requisition_id: int | None = None) -> list[dict]:
    conditions = []
    if receipt_id is not None:
        conditions.append(Document.receipt_id == receipt_id)
    if requisition_id is not None:
        conditions.append(Document.requisition_id == requisition_id)
    rows = db.execute(
        select(Document, User.full_name)
        .outerjoin(User, User.id == Document.uploaded_by)
        .where(*conditions)
        .order_by(Document.uploaded_at.asc(), Document.id.asc())
    ).all()
    return [
        {
            'id': document.id,
            'receipt_id': document.receipt_id,
            'requisition_id': document.requisition_id,
            'file_name': document.file_name,
            'file_type': document.file_type,
            'file_size': document.file_size,
            'uploaded_by': document.uploaded_by,
            'uploaded_by_name': full_name,
            'uploaded_at': document.uploaded_at,
        }
        for document, full_name in rows
    ]
