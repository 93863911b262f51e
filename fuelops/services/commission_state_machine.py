"""
Commission Record State Machine

All commission status changes go through this module.

    pending -> calculated -> approved -> paid
    pending | calculated | approved -> cancelled

paid and cancelled are terminal. When approval is not required for payment
(APPROVAL_REQUIRED_FOR_PAYMENT=False) a calculated record may be paid directly.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from fuelops.config import settings
from fuelops.core.exceptions import InvalidStateTransition
from fuelops.models.commission import CommissionStatus


PENDING = CommissionStatus.PENDING.value
CALCULATED = CommissionStatus.CALCULATED.value
APPROVED = CommissionStatus.APPROVED.value
PAID = CommissionStatus.PAID.value
CANCELLED = CommissionStatus.CANCELLED.value


# =============================================================================
# TRANSITION RULES
# =============================================================================

COMMISSION_TRANSITIONS: Dict[str, List[str]] = {
    PENDING: [
        CALCULATED,     # Amounts computed
        CANCELLED,
    ],
    CALCULATED: [
        APPROVED,       # Approve for payment
        CANCELLED,
    ],
    APPROVED: [
        PAID,           # Payment recorded
        CANCELLED,
    ],
    PAID: [],           # Terminal
    CANCELLED: [],      # Terminal
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (PENDING, CALCULATED): "Calculate",
    (CALCULATED, APPROVED): "Approve",
    (CALCULATED, PAID): "Mark as Paid",
    (APPROVED, PAID): "Mark as Paid",
    (PENDING, CANCELLED): "Cancel",
    (CALCULATED, CANCELLED): "Cancel",
    (APPROVED, CANCELLED): "Cancel",
}


def _approval_required(approval_required: Optional[bool]) -> bool:
    return settings.APPROVAL_REQUIRED_FOR_PAYMENT if approval_required is None else approval_required


def get_allowed_transitions(current_status: str, approval_required: Optional[bool] = None) -> List[str]:
    """Statuses reachable from the current status."""
    allowed = list(COMMISSION_TRANSITIONS.get(current_status, []))
    if current_status == CALCULATED and not _approval_required(approval_required):
        allowed.append(PAID)
    return allowed


def can_transition(current_status: str, new_status: str, approval_required: Optional[bool] = None) -> bool:
    return new_status in get_allowed_transitions(current_status, approval_required)


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str, approval_required: Optional[bool] = None) -> None:
    """
    Raise InvalidStateTransition unless the transition is allowed.
    Re-entering the same status is never allowed; every action changes state.
    """
    if can_transition(current_status, new_status, approval_required):
        return

    allowed = get_allowed_transitions(current_status, approval_required)
    details = {"current_status": current_status, "requested_status": new_status, "allowed": allowed}
    if not allowed:
        raise InvalidStateTransition(
            f"Commission in '{current_status}' status cannot be modified. This is a terminal state.",
            details,
        )
    raise InvalidStateTransition(
        f"Cannot change commission from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        details,
    )


# =============================================================================
# STATUS CHECK HELPERS
# =============================================================================

def can_approve(status: str) -> bool:
    return status == CALCULATED


def can_pay(status: str, approval_required: Optional[bool] = None) -> bool:
    return can_transition(status, PAID, approval_required)


def can_cancel(status: str) -> bool:
    return status in [PENDING, CALCULATED, APPROVED]


def can_recalculate(status: str, force: bool = False) -> bool:
    """Whether a calculation may supersede a record in this status."""
    if status == PAID:
        return False
    if status == APPROVED:
        return force
    return True


def is_terminal(status: str) -> bool:
    return status in [PAID, CANCELLED]


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def transition_commission(record, new_status: str, actor_id: Optional[str] = None,
                          approval_required: Optional[bool] = None) -> None:
    """
    Move a CommissionRecord to a new status and stamp the audit fields.

    Raises:
        InvalidStateTransition: transition not allowed
    """
    validate_transition(record.status, new_status, approval_required)

    record.status = new_status
    now = datetime.now(timezone.utc)

    if new_status == CALCULATED:
        record.calculated_by = actor_id
        record.calculated_at = now
    elif new_status == APPROVED:
        record.approved_by = actor_id
        record.approved_at = now
    elif new_status == PAID:
        record.paid_by = actor_id
        record.paid_at = now
    elif new_status == CANCELLED:
        record.cancelled_by = actor_id
        record.cancelled_at = now
