"""Typed notifications pushed to shipment watchers."""

from typing import Optional

from shared.core import get_logger
from shiptrack.application.schemas import (
    DocumentInfo,
    DocumentUploaded,
    InventoryCounts,
    ShipmentUpdated,
    WarehouseCapacityUpdated,
)
from shiptrack.domain.models import ShipmentRecord, ShipmentStatus
from shiptrack.realtime.manager import (
    DOCUMENT_UPLOADED,
    SHIPMENT_UPDATED,
    WAREHOUSE_CAPACITY_UPDATED,
    ChannelManager,
)

logger = get_logger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class ShipmentEventEmitter:
    """Builds notification payloads from domain records and hands them to the channel."""

    def __init__(self, manager: ChannelManager):
        self.manager = manager

    def emit_status_change(self, record: ShipmentRecord, changed_by: Optional[str] = None) -> int:
        return self.manager.broadcast(record.id, SHIPMENT_UPDATED, ShipmentUpdated(
            shipment_id=record.id,
            status=record.status.value,
            status_changed_at=_iso(record.status_changed_at),
            changed_by=changed_by or "system",
            shipment=record.summary(),
        ))

    def emit_inspection_status(self, record: ShipmentRecord) -> int:
        if record.inspection_status is None:
            return 0
        return self.manager.broadcast(record.id, SHIPMENT_UPDATED, ShipmentUpdated(
            shipment_id=record.id,
            inspection_status=record.inspection_status.value,
            inspection={
                "status": record.inspection_status.value,
                "notes": record.inspection_notes,
                "inspectedBy": record.inspected_by,
                "completedAt": _iso(record.inspection_completed_at),
            },
        ))

    def emit_rejection(self, record: ShipmentRecord) -> int:
        if record.status != ShipmentStatus.REJECTED:
            logger.warning(f"Not emitting rejection for shipment {record.id} in status {record.status}")
            return 0
        return self.manager.broadcast(record.id, SHIPMENT_UPDATED, ShipmentUpdated(
            shipment_id=record.id,
            status=ShipmentStatus.REJECTED.value,
            rejection_reason=record.rejection_reason,
            rejected_by=record.rejected_by,
            rejected_at=_iso(record.rejected_at),
        ))

    def emit_inventory_update(self, shipment_id: str, inventory: InventoryCounts) -> int:
        return self.manager.broadcast(shipment_id, SHIPMENT_UPDATED, ShipmentUpdated(
            shipment_id=shipment_id,
            inventory=inventory.to_wire(),
        ))

    def emit_document_uploaded(self, shipment_id: str, document: DocumentInfo) -> int:
        return self.manager.broadcast(shipment_id, DOCUMENT_UPLOADED, DocumentUploaded(
            shipment_id=shipment_id,
            document=document,
        ))

    def emit_supplier_document_upload(self, shipment_id: str, document: DocumentInfo) -> int:
        uploaded_by = document.uploaded_by if document.uploaded_by != "system" else "supplier"
        document = document.model_copy(update={
            "uploaded_by": uploaded_by,
            "uploaded_by_supplier": True,
        })
        return self.emit_document_uploaded(shipment_id, document)

    def emit_warehouse_capacity(
        self,
        location: str,
        total_capacity: int,
        available_bins: int,
        used_capacity: int,
    ) -> int:
        # Capacity is warehouse-wide, so every connection gets it
        return self.manager.broadcast_global(WAREHOUSE_CAPACITY_UPDATED, WarehouseCapacityUpdated(
            location=location,
            total_capacity=total_capacity,
            available_bins=available_bins,
            used_capacity=used_capacity,
        ))
