from __future__ import annotations

from dataclasses import dataclass

from app.auth import Permission, Role, has_permission
from app.models import ReceiptStatus, RequisitionStatus
from app.services.errors import InvalidTransitionError


@dataclass(frozen=True)
class Transition:
    action: str
    sources: frozenset
    target: object
    permission: Permission
    owner_only: bool = False
    reason_required: bool = False


RECEIPT_TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        'submit',
        frozenset({ReceiptStatus.DRAFT}),
        ReceiptStatus.SUBMITTED,
        Permission.CREATE_RECEIPT,
        owner_only=True,
    ),
    Transition('verify', frozenset({ReceiptStatus.SUBMITTED}), ReceiptStatus.VERIFIED, Permission.VERIFY_RECEIPT),
    Transition(
        'reject',
        frozenset({ReceiptStatus.SUBMITTED}),
        ReceiptStatus.REJECTED,
        Permission.VERIFY_RECEIPT,
        reason_required=True,
    ),
    Transition('approve', frozenset({ReceiptStatus.VERIFIED}), ReceiptStatus.APPROVED, Permission.APPROVE_RECEIPT),
    Transition(
        'reject',
        frozenset({ReceiptStatus.VERIFIED}),
        ReceiptStatus.REJECTED,
        Permission.APPROVE_RECEIPT,
        reason_required=True,
    ),
)

REQUISITION_TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        'submit',
        frozenset({RequisitionStatus.DRAFT}),
        RequisitionStatus.PENDING,
        Permission.CREATE_REQUISITION,
        owner_only=True,
    ),
    Transition(
        'approve',
        frozenset({RequisitionStatus.PENDING}),
        RequisitionStatus.APPROVED,
        Permission.APPROVE_REQUISITION,
    ),
    Transition(
        'reject',
        frozenset({RequisitionStatus.PENDING}),
        RequisitionStatus.REJECTED,
        Permission.APPROVE_REQUISITION,
        reason_required=True,
    ),
    Transition(
        'mark_ready',
        frozenset({RequisitionStatus.APPROVED}),
        RequisitionStatus.READY_FOR_PICKUP,
        Permission.ISSUE_ITEMS,
    ),
    Transition(
        'issue',
        frozenset({RequisitionStatus.APPROVED, RequisitionStatus.READY_FOR_PICKUP}),
        RequisitionStatus.ISSUED,
        Permission.ISSUE_ITEMS,
    ),
    Transition(
        'complete',
        frozenset({RequisitionStatus.ISSUED}),
        RequisitionStatus.COMPLETED,
        Permission.ISSUE_ITEMS,
    ),
    Transition(
        'cancel',
        frozenset({RequisitionStatus.DRAFT, RequisitionStatus.PENDING}),
        RequisitionStatus.CANCELLED,
        Permission.CREATE_REQUISITION,
        owner_only=True,
    ),
    Transition(
        'cancel',
        frozenset(
            {
                RequisitionStatus.DRAFT,
                RequisitionStatus.PENDING,
                RequisitionStatus.APPROVED,
                RequisitionStatus.READY_FOR_PICKUP,
            }
        ),
        RequisitionStatus.CANCELLED,
        Permission.APPROVE_REQUISITION,
    ),
)


def _status_value(value) -> str:
    return value.value if hasattr(value, 'value') else str(value)


def resolve_transition(
    transitions: tuple[Transition, ...],
    *,
    action: str,
    current,
    role: Role | str,
    is_owner: bool,
    reason: str | None = None,
) -> Transition:
    """Pick the transition for ``action`` out of ``current``.

    Raises InvalidTransitionError when the document's status does not allow the
    action at all, PermissionError when it does but not for this caller, and
    ValueError when the chosen transition needs a reason that was not given.
    """
    known_actions = {transition.action for transition in transitions}
    if action not in known_actions:
        raise InvalidTransitionError(f'Unknown action: {action}')

    candidates = [t for t in transitions if t.action == action and current in t.sources]
    if not candidates:
        raise InvalidTransitionError(f'Cannot {action.replace("_", " ")} a document in status {_status_value(current)}')

    for transition in candidates:
        if not has_permission(role, transition.permission):
            continue
        if transition.owner_only and not is_owner:
            continue
        if transition.reason_required and not (reason and reason.strip()):
            raise ValueError('A reason is required')
        return transition

    raise PermissionError(f'Not allowed to {action.replace("_", " ")} this document')


def allowed_actions(
    transitions: tuple[Transition, ...],
    *,
    current,
    role: Role | str,
    is_owner: bool,
) -> list[str]:
    actions: list[str] = []
    for transition in transitions:
        if current not in transition.sources or transition.action in actions:
            continue
        if not has_permission(role, transition.permission):
            continue
        if transition.owner_only and not is_owner:
            continue
        actions.append(transition.action)
    return actions
