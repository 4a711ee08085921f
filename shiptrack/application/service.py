"""
Shipment workflow operations.

Each operation loads the record, asks the workflow engine for the transition,
persists the result and only then notifies watchers. A rejected transition
raises ConflictError before anything is saved or broadcast.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from shared.core import get_logger
from shiptrack.application.schemas import ShipmentCreate
from shiptrack.application.workflow import Operation, TransitionRejected, WorkflowEngine
from shiptrack.domain.models import (
    FreightMode,
    ShipmentRecord,
    ShipmentStatus,
)
from shiptrack.exceptions import ConflictError, NotFoundError, ValidationError
from shiptrack.infrastructure.repository import ShipmentRepository
from shiptrack.realtime.events import ShipmentEventEmitter

logger = get_logger(__name__, component="workflow")

_PLANNED_BY_FREIGHT = {
    FreightMode.AIRFREIGHT: ShipmentStatus.PLANNED_AIRFREIGHT,
    FreightMode.SEAFREIGHT: ShipmentStatus.PLANNED_SEAFREIGHT,
}


class ShipmentWorkflowService:
    def __init__(
        self,
        repository: ShipmentRepository,
        engine: Optional[WorkflowEngine] = None,
        events: Optional[ShipmentEventEmitter] = None,
    ):
        self.repository = repository
        self.engine = engine or WorkflowEngine()
        self.events = events

    async def create_shipment(self, data: ShipmentCreate) -> ShipmentRecord:
        try:
            freight = FreightMode(data.freight)
        except ValueError:
            raise ValidationError(f"Unknown freight mode: {data.freight}")

        now = datetime.now(timezone.utc)
        record = ShipmentRecord(
            id=str(uuid.uuid4()),
            order_ref=data.order_ref,
            supplier=data.supplier,
            supplier_id=data.supplier_id,
            quantity=data.quantity,
            notes=data.notes,
            status=_PLANNED_BY_FREIGHT[freight],
            created_at=now,
            updated_at=now,
            status_changed_at=now,
        )
        record = await self.repository.add(record)
        logger.info(
            f"Shipment created: {record.id}",
            extra={"extra_fields": {"shipment_id": record.id, "order_ref": record.order_ref}},
        )
        return record

    async def get_shipment(self, shipment_id: str) -> ShipmentRecord:
        record = await self.repository.get(shipment_id)
        if record is None:
            raise NotFoundError("Shipment", shipment_id)
        return record

    async def _transition(
        self,
        shipment_id: str,
        operation: Operation,
        actor: Optional[str],
        **inputs: Any,
    ) -> ShipmentRecord:
        record = await self.get_shipment(shipment_id)
        result: Union[ShipmentRecord, TransitionRejected] = self.engine.attempt_transition(
            record, operation, actor, **inputs
        )
        if isinstance(result, TransitionRejected):
            logger.warning(
                f"Transition rejected for shipment {shipment_id}: {result.message}",
                extra={"extra_fields": {
                    "shipment_id": shipment_id,
                    "operation": operation.value,
                    "current_status": result.current_status.value,
                    "valid_sources": [s.value for s in result.valid_sources],
                }},
            )
            raise result.to_error()

        try:
            updated = await self.repository.save(result, expected_status=record.status)
        except ConflictError as e:
            # Another transition committed between our read and write
            logger.warning(
                f"Transition lost race for shipment {shipment_id}: {e.message}",
                extra={"extra_fields": {
                    "shipment_id": shipment_id,
                    "operation": operation.value,
                    "current_status": e.current_status,
                }},
            )
            raise ConflictError(
                e.message,
                valid_sources=[s.value for s in self.engine.valid_sources(operation)],
                current_status=e.current_status,
            )
        logger.info(
            f"Shipment {shipment_id} moved {record.status.value} -> {updated.status.value}",
            extra={"extra_fields": {
                "shipment_id": shipment_id,
                "operation": operation.value,
                "actor": actor,
            }},
        )
        self._notify(updated, operation, actor)
        return updated

    def _notify(self, record: ShipmentRecord, operation: Operation, actor: Optional[str]) -> None:
        if self.events is None:
            return
        self.events.emit_status_change(record, changed_by=actor)
        if operation in (Operation.START_INSPECTION, Operation.COMPLETE_INSPECTION):
            self.events.emit_inspection_status(record)
        elif operation == Operation.REJECT:
            self.events.emit_rejection(record)

    # Operations

    async def mark_in_transit(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.MARK_IN_TRANSIT, actor)

    async def mark_arrived(self, shipment_id: str, location: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.MARK_ARRIVED, actor, location=location)

    async def start_unloading(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.START_UNLOADING, actor)

    async def complete_unloading(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.COMPLETE_UNLOADING, actor)

    async def start_inspection(
        self, shipment_id: str, actor: Optional[str] = None, inspector: Optional[str] = None
    ) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.START_INSPECTION, actor, inspector=inspector)

    async def complete_inspection(
        self,
        shipment_id: str,
        passed: bool,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        inspector: Optional[str] = None,
    ) -> ShipmentRecord:
        return await self._transition(
            shipment_id, Operation.COMPLETE_INSPECTION, actor,
            passed=passed, notes=notes, inspector=inspector,
        )

    async def start_receiving(
        self, shipment_id: str, actor: Optional[str] = None, receiver: Optional[str] = None
    ) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.START_RECEIVING, actor, receiver=receiver)

    async def complete_receiving(
        self,
        shipment_id: str,
        received_quantity: float,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        receiver: Optional[str] = None,
        discrepancies: Optional[Iterable[str]] = None,
    ) -> ShipmentRecord:
        return await self._transition(
            shipment_id, Operation.COMPLETE_RECEIVING, actor,
            received_quantity=received_quantity, notes=notes,
            receiver=receiver, discrepancies=discrepancies,
        )

    async def mark_stored(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.MARK_STORED, actor)

    async def reject(self, shipment_id: str, reason: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.REJECT, actor, reason=reason)

    async def archive(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.ARCHIVE, actor)

    async def unarchive(self, shipment_id: str, actor: Optional[str] = None) -> ShipmentRecord:
        return await self._transition(shipment_id, Operation.UNARCHIVE, actor)
