from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ShipmentStatus(str, Enum):
    PLANNED_AIRFREIGHT = "planned_airfreight"
    PLANNED_SEAFREIGHT = "planned_seafreight"
    IN_TRANSIT_AIRFREIGHT = "in_transit_airfreight"
    IN_TRANSIT_SEAFREIGHT = "in_transit_seafreight"
    ARRIVED_PTA = "arrived_pta"
    ARRIVED_KLM = "arrived_klm"
    ARRIVED_OFFSITE = "arrived_offsite"
    UNLOADING = "unloading"
    INSPECTION_PENDING = "inspection_pending"
    INSPECTING = "inspecting"
    INSPECTION_PASSED = "inspection_passed"
    INSPECTION_FAILED = "inspection_failed"
    RECEIVING = "receiving"
    RECEIVED = "received"
    STORED = "stored"
    REJECTED = "rejected"
    ARCHIVED = "archived"

    def __str__(self) -> str:
        return self.value


PLANNED_STATUSES = (ShipmentStatus.PLANNED_AIRFREIGHT, ShipmentStatus.PLANNED_SEAFREIGHT)
IN_TRANSIT_STATUSES = (ShipmentStatus.IN_TRANSIT_AIRFREIGHT, ShipmentStatus.IN_TRANSIT_SEAFREIGHT)
ARRIVED_STATUSES = (ShipmentStatus.ARRIVED_PTA, ShipmentStatus.ARRIVED_KLM, ShipmentStatus.ARRIVED_OFFSITE)


class FreightMode(str, Enum):
    AIRFREIGHT = "airfreight"
    SEAFREIGHT = "seafreight"


class ArrivalLocation(str, Enum):
    PTA = "pta"
    KLM = "klm"
    OFFSITE = "offsite"


class InspectionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"


class ReceivingStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    DISCREPANCY = "discrepancy"


class ShipmentRecord(BaseModel):
    """One import shipment and the metadata of every workflow stage it has entered.

    Records are immutable; the workflow engine produces updated copies.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
    )

    id: str
    order_ref: str
    supplier: str
    supplier_id: Optional[str] = None
    quantity: float = 0
    status: ShipmentStatus = ShipmentStatus.PLANNED_AIRFREIGHT
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None

    # Transit
    dispatched_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None

    # Unloading
    unloading_started_at: Optional[datetime] = None
    unloading_started_by: Optional[str] = None
    unloading_completed_at: Optional[datetime] = None
    unloading_completed_by: Optional[str] = None

    # Inspection
    inspection_started_at: Optional[datetime] = None
    inspection_completed_at: Optional[datetime] = None
    inspection_status: Optional[InspectionStatus] = None
    inspection_notes: Optional[str] = None
    inspected_by: Optional[str] = None

    # Receiving
    receiving_started_at: Optional[datetime] = None
    receiving_completed_at: Optional[datetime] = None
    receiving_status: Optional[ReceivingStatus] = None
    receiving_notes: Optional[str] = None
    received_by: Optional[str] = None
    received_quantity: Optional[float] = None
    discrepancies: List[str] = Field(default_factory=list)

    stored_at: Optional[datetime] = None

    # Rejection
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejected_by: Optional[str] = None

    # Archive
    archived_at: Optional[datetime] = None
    archived_from_status: Optional[ShipmentStatus] = None

    @property
    def is_archived(self) -> bool:
        return self.status == ShipmentStatus.ARCHIVED

    def summary(self) -> dict:
        """Partial view sent to watchers with status updates."""
        return {
            "id": self.id,
            "orderRef": self.order_ref,
            "supplier": self.supplier,
            "status": self.status.value,
            "inspectionStatus": self.inspection_status.value if self.inspection_status else None,
            "receivingStatus": self.receiving_status.value if self.receiving_status else None,
            "statusChangedAt": self.status_changed_at.isoformat() if self.status_changed_at else None,
        }
