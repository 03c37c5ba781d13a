from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1)


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, max_length=100)
    rank: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    department: str | None = Field(default=None, max_length=100)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class UserCreate(BaseModel):
    username: str
    password: str
    full_name: str = Field(max_length=100)
    role: Literal['semi_user', 'user', 'admin', 'super_admin'] = 'semi_user'
    rank: str | None = Field(default=None, max_length=50)
    service_number: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    department: str | None = Field(default=None, max_length=100)


class UserUpdate(BaseModel):
    full_name: str | None = Field(default=None, max_length=100)
    role: Literal['semi_user', 'user', 'admin', 'super_admin'] | None = None
    rank: str | None = Field(default=None, max_length=50)
    service_number: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    department: str | None = Field(default=None, max_length=100)


class PasswordReset(BaseModel):
    new_password: str


class ItemCreate(BaseModel):
    item_code: str | None = Field(default=None, max_length=50)
    nomenclature: str = Field(max_length=200)
    category: Literal['consumable', 'non_consumable', 'sensitive', 'capital_asset']
    unit_of_measure: str = Field(max_length=30)
    description: str | None = None
    unit_price: Decimal = Field(default=Decimal('0'), ge=0)
    reorder_level: Decimal = Field(default=Decimal('0'), ge=0)
    location: str | None = Field(default=None, max_length=100)


class ItemUpdate(BaseModel):
    item_code: str | None = Field(default=None, max_length=50)
    nomenclature: str | None = Field(default=None, max_length=200)
    category: Literal['consumable', 'non_consumable', 'sensitive', 'capital_asset'] | None = None
    unit_of_measure: str | None = Field(default=None, max_length=30)
    description: str | None = None
    unit_price: Decimal | None = Field(default=None, ge=0)
    reorder_level: Decimal | None = Field(default=None, ge=0)
    location: str | None = Field(default=None, max_length=100)
    is_active: bool | None = None


class StockAdjustment(BaseModel):
    quantity: Decimal
    reason: str = Field(min_length=1)


class ReceiptLine(BaseModel):
    item_id: int | None = None
    item_name: str | None = Field(default=None, max_length=200)
    category: Literal['consumable', 'non_consumable', 'sensitive', 'capital_asset'] | None = None
    unit_of_measure: str | None = Field(default=None, max_length=30)
    challan_quantity: Decimal = Field(ge=0)
    received_quantity: Decimal = Field(ge=0)
    unit_rate: Decimal = Field(default=Decimal('0'), ge=0)
    condition_notes: str | None = None


class ReceiptCreate(BaseModel):
    receipt_date: date
    challan_number: str = Field(max_length=100)
    challan_date: date
    supplier_name: str = Field(max_length=200)
    vehicle_number: str | None = Field(default=None, max_length=50)
    iv_number: str | None = Field(default=None, max_length=50)
    rv_number: str | None = Field(default=None, max_length=50)
    received_from: str | None = Field(default=None, max_length=200)
    remarks: str | None = None
    items: list[ReceiptLine]
    save_as: Literal['draft', 'submitted'] = 'draft'


class ReceiptUpdate(BaseModel):
    receipt_date: date | None = None
    challan_number: str | None = Field(default=None, max_length=100)
    challan_date: date | None = None
    supplier_name: str | None = Field(default=None, max_length=200)
    vehicle_number: str | None = Field(default=None, max_length=50)
    iv_number: str | None = Field(default=None, max_length=50)
    rv_number: str | None = Field(default=None, max_length=50)
    received_from: str | None = Field(default=None, max_length=200)
    remarks: str | None = None
    items: list[ReceiptLine] | None = None


class ReceiptDecision(BaseModel):
    action: Literal['verify', 'approve', 'reject']
    comments: str | None = None


class Nomination(BaseModel):
    nominee_id: int


class RequisitionLine(BaseModel):
    item_id: int
    quantity_requested: Decimal = Field(gt=0)
    notes: str | None = None


class RequisitionCreate(BaseModel):
    purpose: str = Field(min_length=1)
    department: str | None = Field(default=None, max_length=100)
    request_type: Literal['self', 'department', 'bulk'] = 'self'
    priority: Literal['normal', 'urgent', 'emergency'] = 'normal'
    items: list[RequisitionLine]
    save_as: Literal['draft', 'pending'] = 'draft'


class RequisitionUpdate(BaseModel):
    purpose: str | None = None
    department: str | None = Field(default=None, max_length=100)
    request_type: Literal['self', 'department', 'bulk'] | None = None
    priority: Literal['normal', 'urgent', 'emergency'] | None = None
    items: list[RequisitionLine] | None = None


class RequisitionAction(BaseModel):
    action: Literal['submit', 'approve', 'reject', 'mark_ready', 'complete', 'cancel']
    comments: str | None = None
    # requisition line id -> approved quantity
    approved_quantities: dict[int, Decimal] | None = None


class IssueLine(BaseModel):
    requisition_item_id: int
    quantity: Decimal | None = Field(default=None, ge=0)
    serial_numbers: list[str] = Field(default_factory=list)
    condition: Literal['new', 'good', 'fair', 'damaged'] = 'good'


class IssueRequest(BaseModel):
    lines: list[IssueLine] | None = None
    expected_return_date: date | None = None
    gate_pass_number: str | None = Field(default=None, max_length=50)
    notes: str | None = None


class ReturnCreate(BaseModel):
    issuance_id: int
    quantity: Decimal = Field(gt=0)
    condition: Literal['good', 'fair', 'damaged', 'lost']
    return_reason: str | None = None
    damage_description: str | None = None
    notes: str | None = None


class ReturnDecision(BaseModel):
    action: Literal['accept', 'reject']
    reason: str | None = None
    notes: str | None = None
