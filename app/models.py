from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')
Quantity = Numeric(14, 3)
Money = Numeric(14, 2)


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    SEMI_USER = 'semi_user'
    USER = 'user'
    ADMIN = 'admin'
    SUPER_ADMIN = 'super_admin'


class ItemCategory(str, Enum):
    CONSUMABLE = 'consumable'
    NON_CONSUMABLE = 'non_consumable'
    SENSITIVE = 'sensitive'
    CAPITAL_ASSET = 'capital_asset'


class ReceiptStatus(str, Enum):
    DRAFT = 'draft'
    SUBMITTED = 'submitted'
    VERIFIED = 'verified'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class RequisitionStatus(str, Enum):
    DRAFT = 'draft'
    PENDING = 'pending'
    APPROVED = 'approved'
    READY_FOR_PICKUP = 'ready_for_pickup'
    ISSUED = 'issued'
    COMPLETED = 'completed'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


class RequestType(str, Enum):
    SELF = 'self'
    DEPARTMENT = 'department'
    BULK = 'bulk'


class Priority(str, Enum):
    NORMAL = 'normal'
    URGENT = 'urgent'
    EMERGENCY = 'emergency'


class ItemCondition(str, Enum):
    NEW = 'new'
    GOOD = 'good'
    FAIR = 'fair'
    DAMAGED = 'damaged'


class ReturnCondition(str, Enum):
    GOOD = 'good'
    FAIR = 'fair'
    DAMAGED = 'damaged'
    LOST = 'lost'


class ReturnStatus(str, Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


class AllocationStatus(str, Enum):
    ACTIVE = 'active'
    RETURNED = 'returned'
    LOST = 'lost'
    DAMAGED = 'damaged'


class MovementType(str, Enum):
    RECEIPT = 'receipt'
    ISSUE = 'issue'
    RETURN = 'return'
    ADJUSTMENT = 'adjustment'
    DAMAGE = 'damage'
    LOSS = 'loss'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    rank: Mapped[str | None] = mapped_column(String(50))
    service_number: Mapped[str | None] = mapped_column(String(50))
    role: Mapped[UserRole] = mapped_column(_enum(UserRole, 'user_role'), nullable=False, default=UserRole.SEMI_USER)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    department: Mapped[str | None] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Item(Base):
    __tablename__ = 'items_master'
    __table_args__ = (
        CheckConstraint('current_stock >= 0', name='items_master_current_stock_ck'),
        CheckConstraint('allocated_stock >= 0', name='items_master_allocated_stock_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    item_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    nomenclature: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[ItemCategory] = mapped_column(_enum(ItemCategory, 'item_category'), nullable=False)
    unit_of_measure: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    reorder_level: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    current_stock: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    allocated_stock: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    location: Mapped[str | None] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def available_stock(self) -> Decimal:
        return (self.current_stock or Decimal('0')) - (self.allocated_stock or Decimal('0'))


class StockReceipt(Base):
    __tablename__ = 'stock_receipts'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    grn_number: Mapped[str | None] = mapped_column(String(30), unique=True)
    iv_number: Mapped[str | None] = mapped_column(String(50))
    rv_number: Mapped[str | None] = mapped_column(String(50))
    received_from: Mapped[str | None] = mapped_column(String(200))
    receipt_date: Mapped[date] = mapped_column(Date, nullable=False)
    challan_number: Mapped[str] = mapped_column(String(100), nullable=False)
    challan_date: Mapped[date] = mapped_column(Date, nullable=False)
    supplier_name: Mapped[str] = mapped_column(String(200), nullable=False)
    vehicle_number: Mapped[str | None] = mapped_column(String(50))
    received_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    status: Mapped[ReceiptStatus] = mapped_column(
        _enum(ReceiptStatus, 'receipt_status'), nullable=False, default=ReceiptStatus.DRAFT, server_default='draft'
    )
    nominated_to: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    nominated_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    nominated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verified_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    remarks: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    items: Mapped[list[ReceiptItem]] = relationship(
        back_populates='receipt', cascade='all, delete-orphan', order_by='ReceiptItem.id'
    )


class ReceiptItem(Base):
    __tablename__ = 'receipt_items'
    __table_args__ = (
        CheckConstraint('challan_quantity >= 0', name='receipt_items_challan_quantity_ck'),
        CheckConstraint('received_quantity >= 0', name='receipt_items_received_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    receipt_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stock_receipts.id', ondelete='CASCADE'), nullable=False)
    item_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('items_master.id'))
    item_name: Mapped[str | None] = mapped_column(String(200))
    category: Mapped[ItemCategory | None] = mapped_column(_enum(ItemCategory, 'item_category'))
    unit_of_measure: Mapped[str | None] = mapped_column(String(30))
    challan_quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    received_quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    unit_rate: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    condition_notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    receipt: Mapped[StockReceipt] = relationship(back_populates='items')
    item: Mapped[Item | None] = relationship()

    @property
    def variance(self) -> Decimal:
        return self.received_quantity - self.challan_quantity

    @property
    def total_value(self) -> Decimal:
        return self.received_quantity * (self.unit_rate or Decimal('0'))


class Document(Base):
    __tablename__ = 'documents'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    receipt_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('stock_receipts.id', ondelete='CASCADE'))
    requisition_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('requisitions.id', ondelete='CASCADE'))
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ApprovalWorkflow(Base):
    __tablename__ = 'approval_workflow'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    receipt_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('stock_receipts.id', ondelete='CASCADE'))
    requisition_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('requisitions.id', ondelete='CASCADE'))
    approver_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text)
    action_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Requisition(Base):
    __tablename__ = 'requisitions'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    requisition_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    requester_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    department: Mapped[str | None] = mapped_column(String(100))
    request_type: Mapped[RequestType] = mapped_column(
        _enum(RequestType, 'request_type'), nullable=False, default=RequestType.SELF
    )
    priority: Mapped[Priority] = mapped_column(_enum(Priority, 'priority'), nullable=False, default=Priority.NORMAL)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RequisitionStatus] = mapped_column(
        _enum(RequisitionStatus, 'requisition_status'), nullable=False, default=RequisitionStatus.DRAFT
    )
    total_value: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    approved_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approval_comments: Mapped[str | None] = mapped_column(Text)
    issued_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    items: Mapped[list[RequisitionItem]] = relationship(
        back_populates='requisition', cascade='all, delete-orphan', order_by='RequisitionItem.id'
    )


class RequisitionItem(Base):
    __tablename__ = 'requisition_items'
    __table_args__ = (
        CheckConstraint('quantity_requested > 0', name='requisition_items_quantity_requested_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    requisition_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('requisitions.id', ondelete='CASCADE'), nullable=False
    )
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items_master.id'), nullable=False)
    quantity_requested: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    quantity_approved: Mapped[Decimal | None] = mapped_column(Quantity)
    quantity_issued: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    requisition: Mapped[Requisition] = relationship(back_populates='items')
    item: Mapped[Item] = relationship()

    @property
    def effective_quantity(self) -> Decimal:
        if self.quantity_approved is not None:
            return self.quantity_approved
        return self.quantity_requested

    @property
    def total_price(self) -> Decimal:
        return self.effective_quantity * (self.unit_price or Decimal('0'))


class Issuance(Base):
    __tablename__ = 'issuances'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    issuance_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    requisition_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('requisitions.id'), nullable=False)
    requisition_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('requisition_items.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items_master.id'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    serial_numbers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    condition: Mapped[ItemCondition] = mapped_column(
        _enum(ItemCondition, 'item_condition'), nullable=False, default=ItemCondition.GOOD
    )
    issued_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    issued_to: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expected_return_date: Mapped[date | None] = mapped_column(Date)
    gate_pass_number: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)

    item: Mapped[Item] = relationship()


class ItemAllocation(Base):
    __tablename__ = 'item_allocations'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items_master.id'), nullable=False)
    issuance_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('issuances.id', ondelete='CASCADE'), nullable=False)
    allocated_to: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    returned_quantity: Mapped[Decimal] = mapped_column(
        Quantity, nullable=False, default=Decimal('0'), server_default='0'
    )
    status: Mapped[AllocationStatus] = mapped_column(
        _enum(AllocationStatus, 'allocation_status'), nullable=False, default=AllocationStatus.ACTIVE
    )
    allocated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ItemReturn(Base):
    __tablename__ = 'returns'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='returns_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    return_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    issuance_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('issuances.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items_master.id'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    condition: Mapped[ReturnCondition] = mapped_column(_enum(ReturnCondition, 'return_condition'), nullable=False)
    return_reason: Mapped[str | None] = mapped_column(Text)
    damage_description: Mapped[str | None] = mapped_column(Text)
    returned_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    returned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    accepted_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[ReturnStatus] = mapped_column(
        _enum(ReturnStatus, 'return_status'), nullable=False, default=ReturnStatus.PENDING
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)


class StockMovement(Base):
    __tablename__ = 'stock_movements'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items_master.id'), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(_enum(MovementType, 'movement_type'), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(30))
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    performed_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    attempted_username: Mapped[str] = mapped_column(String(255), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    table_name: Mapped[str | None] = mapped_column(String(50))
    record_id: Mapped[int | None] = mapped_column(BigInteger)
    old_value: Mapped[dict | None] = mapped_column(JSON)
    new_value: Mapped[dict | None] = mapped_column(JSON)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class DocumentCounter(Base):
    __tablename__ = 'document_counters'

    prefix: Mapped[str] = mapped_column(String(10), primary_key=True)
    # 0 for counters that do not restart each year (item codes).
    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
