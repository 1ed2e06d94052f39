"""Status state machines with transition validation.

Every status write in the service goes through one of these tables. A write
names the status it expects to replace, so a stale or duplicate notification
can never move a record backwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from usdc_payroll.errors import InvalidTransitionError

__all__ = [
    "InvalidTransitionError",
    "ItemStateMachine",
    "ItemStatus",
    "OperationStateMachine",
    "OperationStatus",
    "RunStateMachine",
    "RunStatus",
    "StateMachine",
    "TransferStateMachine",
    "TransferStatus",
    "compare_and_set_status",
    "status_value",
]


class RunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ItemStatus(str, Enum):
    """Payroll item status values."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransferStatus(str, Enum):
    """Cross-chain transfer status values."""

    PENDING = "PENDING"
    ATTESTED = "ATTESTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OperationStatus(str, Enum):
    """Sponsored / fee-abstracted operation status values."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StateMachine:
    """Transition table shared by the concrete machines below."""

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(status_value(from_status), status_value(to_status))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.VALID_TRANSITIONS and not cls.VALID_TRANSITIONS[status]

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


class RunStateMachine(StateMachine):
    """Payroll run lifecycle.

    - DRAFT → PENDING (all items written)
    - PENDING → PROCESSING (execution claimed)
    - PROCESSING → COMPLETED (at least one item dispatched)
    - PROCESSING → FAILED (no item dispatched, or execution crashed)
    """

    VALID_TRANSITIONS = {
        RunStatus.DRAFT: [RunStatus.PENDING],
        RunStatus.PENDING: [RunStatus.PROCESSING],
        RunStatus.PROCESSING: [RunStatus.COMPLETED, RunStatus.FAILED],
        RunStatus.COMPLETED: [],
        RunStatus.FAILED: [],
    }


class ItemStateMachine(StateMachine):
    """Payroll item lifecycle.

    Both payment paths stop at SUBMITTED until the provider reports the
    outcome, through a monitor or a webhook.
    """

    VALID_TRANSITIONS = {
        ItemStatus.PENDING: [ItemStatus.PROCESSING],
        ItemStatus.PROCESSING: [ItemStatus.SUBMITTED, ItemStatus.COMPLETED, ItemStatus.FAILED],
        ItemStatus.SUBMITTED: [ItemStatus.COMPLETED, ItemStatus.FAILED],
        ItemStatus.COMPLETED: [],
        ItemStatus.FAILED: [],
    }

    DISPATCHED = {ItemStatus.SUBMITTED, ItemStatus.COMPLETED}

    @classmethod
    def is_dispatched(cls, status: str) -> bool:
        """Whether the item left the service successfully (counts toward run success)."""
        return status in cls.DISPATCHED


class TransferStateMachine(StateMachine):
    """Cross-chain transfer lifecycle.

    PENDING → COMPLETED is allowed for a completion notice that overtakes
    the attestation.
    """

    VALID_TRANSITIONS = {
        TransferStatus.PENDING: [TransferStatus.ATTESTED, TransferStatus.COMPLETED, TransferStatus.FAILED],
        TransferStatus.ATTESTED: [TransferStatus.COMPLETED, TransferStatus.FAILED],
        TransferStatus.COMPLETED: [],
        TransferStatus.FAILED: [],
    }


class OperationStateMachine(StateMachine):
    """Gas station transaction / paymaster operation lifecycle."""

    VALID_TRANSITIONS = {
        OperationStatus.PENDING: [OperationStatus.PROCESSING, OperationStatus.COMPLETED, OperationStatus.FAILED],
        OperationStatus.PROCESSING: [OperationStatus.COMPLETED, OperationStatus.FAILED],
        OperationStatus.COMPLETED: [],
        OperationStatus.FAILED: [],
    }


def status_value(status: str) -> str:
    """Plain string for a status given as an enum member or string."""
    return status.value if isinstance(status, Enum) else status


async def compare_and_set_status(
    session: AsyncSession,
    model: Any,
    record_id: UUID,
    machine: type[StateMachine],
    from_status: str,
    to_status: str,
    **values: Any,
) -> bool:
    """Move ``record_id`` from ``from_status`` to ``to_status`` atomically.

    Raises InvalidTransitionError if the table forbids the move. Returns False
    when the row no longer holds ``from_status`` (another writer got there
    first); the caller decides whether that is a conflict or a no-op.
    """
    machine.validate_transition(from_status, to_status)
    result = await session.execute(
        update(model)
        .where(model.id == record_id, model.status == status_value(from_status))
        .values(status=status_value(to_status), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
