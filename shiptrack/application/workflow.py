"""
Shipment workflow state machine.

Decides whether a requested stage transition is legal for a shipment's
current status and computes the updated record. Performs no I/O: every
call is a pure function of (record, operation, inputs, clock), which keeps
the rules testable without a database or a network.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from shiptrack.domain.models import (
    ARRIVED_STATUSES,
    IN_TRANSIT_STATUSES,
    PLANNED_STATUSES,
    ArrivalLocation,
    InspectionStatus,
    ReceivingStatus,
    ShipmentRecord,
    ShipmentStatus,
)
from shiptrack.exceptions import ConflictError, ValidationError


class Operation(str, Enum):
    MARK_IN_TRANSIT = "mark_in_transit"
    MARK_ARRIVED = "mark_arrived"
    START_UNLOADING = "start_unloading"
    COMPLETE_UNLOADING = "complete_unloading"
    START_INSPECTION = "start_inspection"
    COMPLETE_INSPECTION = "complete_inspection"
    START_RECEIVING = "start_receiving"
    COMPLETE_RECEIVING = "complete_receiving"
    MARK_STORED = "mark_stored"
    REJECT = "reject"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


@dataclass(frozen=True)
class TransitionRejected:
    """The operation is not allowed from the record's current status."""

    operation: Operation
    current_status: ShipmentStatus
    valid_sources: Tuple[ShipmentStatus, ...]

    @property
    def message(self) -> str:
        expected = ", ".join(s.value for s in self.valid_sources)
        return (
            f"Cannot {self.operation.label}: shipment is '{self.current_status.value}', "
            f"expected one of [{expected}]"
        )

    def to_error(self) -> ConflictError:
        return ConflictError(
            self.message,
            valid_sources=[s.value for s in self.valid_sources],
            current_status=self.current_status.value,
        )


@dataclass(frozen=True)
class TransitionContext:
    actor: Optional[str]
    now: datetime
    inputs: Dict[str, Any] = field(default_factory=dict)


FieldUpdater = Callable[[ShipmentRecord, TransitionContext], Dict[str, Any]]


@dataclass(frozen=True)
class TransitionRule:
    operation: Operation
    sources: FrozenSet[ShipmentStatus]
    apply: FieldUpdater


# ---------------------------------------------------------------------------
# Field updaters, one per operation
# ---------------------------------------------------------------------------

def _mark_in_transit(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    target = (
        ShipmentStatus.IN_TRANSIT_AIRFREIGHT
        if record.status == ShipmentStatus.PLANNED_AIRFREIGHT
        else ShipmentStatus.IN_TRANSIT_SEAFREIGHT
    )
    return {"status": target, "dispatched_at": ctx.now}


_ARRIVAL_TARGETS = {
    ArrivalLocation.PTA: ShipmentStatus.ARRIVED_PTA,
    ArrivalLocation.KLM: ShipmentStatus.ARRIVED_KLM,
    ArrivalLocation.OFFSITE: ShipmentStatus.ARRIVED_OFFSITE,
}


def _mark_arrived(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    location = ctx.inputs.get("location")
    try:
        location = ArrivalLocation(location)
    except ValueError:
        allowed = ", ".join(l.value for l in ArrivalLocation)
        raise ValidationError(f"location must be one of [{allowed}]")
    return {"status": _ARRIVAL_TARGETS[location], "arrived_at": ctx.now}


def _start_unloading(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "status": ShipmentStatus.UNLOADING,
        "unloading_started_at": ctx.now,
        "unloading_started_by": ctx.actor,
    }


def _complete_unloading(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "status": ShipmentStatus.INSPECTION_PENDING,
        "unloading_completed_at": ctx.now,
        "unloading_completed_by": ctx.actor,
    }


def _start_inspection(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "status": ShipmentStatus.INSPECTING,
        "inspection_status": InspectionStatus.IN_PROGRESS,
        "inspected_by": ctx.inputs.get("inspector") or ctx.actor,
        "inspection_started_at": ctx.now,
    }


def _complete_inspection(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    passed = ctx.inputs.get("passed")
    if not isinstance(passed, bool):
        raise ValidationError("passed must be true or false")
    return {
        "status": ShipmentStatus.INSPECTION_PASSED if passed else ShipmentStatus.INSPECTION_FAILED,
        "inspection_status": InspectionStatus.PASSED if passed else InspectionStatus.FAILED,
        "inspection_notes": ctx.inputs.get("notes") or "",
        "inspected_by": ctx.inputs.get("inspector") or record.inspected_by,
        "inspection_completed_at": ctx.now,
    }


def _start_receiving(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "status": ShipmentStatus.RECEIVING,
        "receiving_status": ReceivingStatus.IN_PROGRESS,
        "received_by": ctx.inputs.get("receiver") or ctx.actor,
        "receiving_started_at": ctx.now,
    }


def _complete_receiving(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    quantity = ctx.inputs.get("received_quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity < 0:
        raise ValidationError("received_quantity must be a non-negative number")
    discrepancies = [d for d in (ctx.inputs.get("discrepancies") or []) if d]

    if discrepancies:
        receiving_status = ReceivingStatus.DISCREPANCY
    elif quantity < record.quantity:
        receiving_status = ReceivingStatus.PARTIAL
    else:
        receiving_status = ReceivingStatus.COMPLETED

    return {
        "status": ShipmentStatus.RECEIVED,
        "receiving_status": receiving_status,
        "received_quantity": quantity,
        "receiving_notes": ctx.inputs.get("notes") or "",
        "discrepancies": discrepancies,
        "received_by": ctx.inputs.get("receiver") or record.received_by,
        "receiving_completed_at": ctx.now,
    }


def _mark_stored(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {"status": ShipmentStatus.STORED, "stored_at": ctx.now}


def _reject(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    reason = (ctx.inputs.get("reason") or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    return {
        "status": ShipmentStatus.REJECTED,
        "rejection_reason": reason,
        "rejected_by": ctx.actor or "Unknown",
        "rejected_at": ctx.now,
    }


def _archive(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "status": ShipmentStatus.ARCHIVED,
        "archived_at": ctx.now,
        "archived_from_status": record.status,
    }


def _unarchive(record: ShipmentRecord, ctx: TransitionContext) -> Dict[str, Any]:
    # Records archived without a remembered status fall back to stored
    restored = record.archived_from_status or ShipmentStatus.STORED
    return {"status": restored, "archived_at": None, "archived_from_status": None}


RULES: Dict[Operation, TransitionRule] = {
    rule.operation: rule
    for rule in (
        TransitionRule(Operation.MARK_IN_TRANSIT, frozenset(PLANNED_STATUSES), _mark_in_transit),
        TransitionRule(Operation.MARK_ARRIVED, frozenset(IN_TRANSIT_STATUSES), _mark_arrived),
        TransitionRule(Operation.START_UNLOADING, frozenset(ARRIVED_STATUSES), _start_unloading),
        TransitionRule(Operation.COMPLETE_UNLOADING, frozenset({ShipmentStatus.UNLOADING}), _complete_unloading),
        TransitionRule(Operation.START_INSPECTION, frozenset({ShipmentStatus.INSPECTION_PENDING}), _start_inspection),
        TransitionRule(Operation.COMPLETE_INSPECTION, frozenset({ShipmentStatus.INSPECTING}), _complete_inspection),
        TransitionRule(Operation.START_RECEIVING, frozenset({ShipmentStatus.INSPECTION_PASSED}), _start_receiving),
        TransitionRule(Operation.COMPLETE_RECEIVING, frozenset({ShipmentStatus.RECEIVING}), _complete_receiving),
        TransitionRule(Operation.MARK_STORED, frozenset({ShipmentStatus.RECEIVED}), _mark_stored),
        TransitionRule(Operation.REJECT, frozenset({ShipmentStatus.INSPECTION_FAILED}), _reject),
        TransitionRule(
            Operation.ARCHIVE,
            frozenset(s for s in ShipmentStatus if s != ShipmentStatus.ARCHIVED),
            _archive,
        ),
        TransitionRule(Operation.UNARCHIVE, frozenset({ShipmentStatus.ARCHIVED}), _unarchive),
    )
}


def _ordered(statuses: FrozenSet[ShipmentStatus]) -> Tuple[ShipmentStatus, ...]:
    order = list(ShipmentStatus)
    return tuple(sorted(statuses, key=order.index))


class WorkflowEngine:
    """Pure decision component for shipment stage transitions."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def valid_sources(operation: Operation) -> Tuple[ShipmentStatus, ...]:
        return _ordered(RULES[Operation(operation)].sources)

    @staticmethod
    def allowed_operations(record: ShipmentRecord) -> List[Operation]:
        """Operations that may be invoked from the record's current status."""
        return [op for op, rule in RULES.items() if record.status in rule.sources]

    def attempt_transition(
        self,
        record: ShipmentRecord,
        operation: Union[Operation, str],
        actor: Optional[str] = None,
        **inputs: Any,
    ) -> Union[ShipmentRecord, TransitionRejected]:
        """Apply ``operation`` to ``record``.

        Returns the updated copy when the current status is a valid source for
        the operation, otherwise a ``TransitionRejected`` naming the valid
        sources. Raises ``ValidationError`` for malformed inputs. The input
        record is never modified.
        """
        rule = RULES[Operation(operation)]
        if record.status not in rule.sources:
            return TransitionRejected(rule.operation, record.status, _ordered(rule.sources))

        now = self._clock()
        ctx = TransitionContext(actor=actor, now=now, inputs=inputs)
        updates = rule.apply(record, ctx)
        updates.update(
            status_changed_at=now,
            status_changed_by=actor,
            updated_at=now,
        )
        return record.model_copy(update=updates)

    # Per-operation entry points

    def mark_in_transit(self, record, actor=None):
        return self.attempt_transition(record, Operation.MARK_IN_TRANSIT, actor)

    def mark_arrived(self, record, location, actor=None):
        return self.attempt_transition(record, Operation.MARK_ARRIVED, actor, location=location)

    def start_unloading(self, record, actor=None):
        return self.attempt_transition(record, Operation.START_UNLOADING, actor)

    def complete_unloading(self, record, actor=None):
        return self.attempt_transition(record, Operation.COMPLETE_UNLOADING, actor)

    def start_inspection(self, record, actor=None, inspector=None):
        return self.attempt_transition(record, Operation.START_INSPECTION, actor, inspector=inspector)

    def complete_inspection(self, record, passed, actor=None, notes=None, inspector=None):
        return self.attempt_transition(
            record, Operation.COMPLETE_INSPECTION, actor,
            passed=passed, notes=notes, inspector=inspector,
        )

    def start_receiving(self, record, actor=None, receiver=None):
        return self.attempt_transition(record, Operation.START_RECEIVING, actor, receiver=receiver)

    def complete_receiving(self, record, received_quantity, actor=None, notes=None,
                           receiver=None, discrepancies=None):
        return self.attempt_transition(
            record, Operation.COMPLETE_RECEIVING, actor,
            received_quantity=received_quantity, notes=notes,
            receiver=receiver, discrepancies=discrepancies,
        )

    def mark_stored(self, record, actor=None):
        return self.attempt_transition(record, Operation.MARK_STORED, actor)

    def reject(self, record, reason, actor=None):
        return self.attempt_transition(record, Operation.REJECT, actor, reason=reason)

    def archive(self, record, actor=None):
        return self.attempt_transition(record, Operation.ARCHIVE, actor)

    def unarchive(self, record, actor=None):
        return self.attempt_transition(record, Operation.UNARCHIVE, actor)
